"""Helpers for turning free text into file names and identifiers."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_WORD_PATTERN = re.compile(r"[A-Za-z0-9]+")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise ``value`` into a lowercase, filesystem-friendly slug.

    Slugs longer than ``max_length`` keep a readable prefix and gain a short
    content hash so that distinct long inputs stay distinct on disk.
    """
    source = (value or "").strip().lower() or fallback.lower()
    slug = _collapse(source) or _collapse(fallback.lower()) or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def pascal_case(value: str | None, *, fallback: str = "Generated") -> str:
    """Return ``value`` as a PascalCase identifier, e.g. ``"user list" -> "UserList"``."""
    words = _WORD_PATTERN.findall(value or "")
    if not words:
        return fallback
    name = "".join(word[:1].upper() + word[1:] for word in words)
    if name[0].isdigit():
        name = f"{fallback}{name}"
    return name


def _collapse(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")
