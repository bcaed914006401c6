"""Utility helpers for collaborator subprocesses."""

from __future__ import annotations

import os
import re
from typing import Mapping

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "TMUX",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment that cannot redirect git or tmux at another repository or server."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def render_command(template: str, **values: str) -> str:
    """Replace known ``{key}`` placeholders and leave every other brace untouched.

    Commands often carry inline JSON, so unknown or malformed placeholders are
    kept literally instead of raising like ``str.format`` would.
    """

    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def first_line(text: str) -> str:
    stripped = text.strip()
    return stripped.splitlines()[0] if stripped else ""


__all__ = ["first_line", "render_command", "sanitize_environment"]
