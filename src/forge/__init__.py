"""Forge: an autonomous build-and-repair agent for existing source trees."""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
