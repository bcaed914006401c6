"""Operation records and the lifecycle state machine."""

from .machine import (
    DependencyCycleError,
    DependencyNotMergedError,
    InvalidTransitionError,
    StateMachine,
    UnknownDependencyError,
)
from .models import SCHEMA_VERSION, Operation, OperationKind, Phase, TERMINAL_PHASES
from .store import (
    OperationEvent,
    OperationExistsError,
    OperationNotFoundError,
    StateError,
    StateStore,
    atomic_write_text,
)

__all__ = [
    "DependencyCycleError",
    "DependencyNotMergedError",
    "InvalidTransitionError",
    "Operation",
    "OperationEvent",
    "OperationExistsError",
    "OperationKind",
    "OperationNotFoundError",
    "Phase",
    "SCHEMA_VERSION",
    "StateError",
    "StateMachine",
    "StateStore",
    "TERMINAL_PHASES",
    "UnknownDependencyError",
    "atomic_write_text",
]
