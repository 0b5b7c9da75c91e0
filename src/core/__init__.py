"""Shared foundations: configuration loading, the error hierarchy, conversation types and the CLI."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
