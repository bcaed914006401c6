"""Convoy: coordinate coding-agent workers and serialize their merges."""

__version__ = "0.1.0"

__all__ = ["__version__"]
