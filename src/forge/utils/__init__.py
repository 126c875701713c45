"""Small helpers shared across forge services."""

from .slug import pascal_case, slugify

__all__ = ["pascal_case", "slugify"]
