"""Project-root scoped file access, listing and codebase search."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Optional, Sequence

from ..errors import PathEscapeError
from .vcs import GitRepository

LOGGER = logging.getLogger(__name__)

SEARCHABLE_SUFFIXES: tuple[str, ...] = (".ts", ".tsx", ".js", ".jsx", ".json", ".css", ".py")
IGNORED_DIRECTORIES = frozenset({".git", "node_modules", "dist", "build", ".forge", "__pycache__", ".venv"})
KEY_CONFIG_FILES: tuple[str, ...] = (
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    "requirements.txt",
    "vite.config.ts",
    "nest-cli.json",
    "README.md",
)
DEFAULT_PATH_PREFIXES: tuple[str, ...] = ("frontend/", "backend/")
MATCH_TEXT_LIMIT = 200


def smart_truncate(text: str, limit: int) -> str:
    """Trim ``text`` to roughly ``limit`` characters keeping the head (60%) and the tail."""
    if limit <= 0 or len(text) <= limit:
        return text
    marker = "\n\n... truncated ...\n\n"
    head = int(limit * 0.6)
    tail = max(limit - head - len(marker), 0)
    return text[:head] + marker + (text[-tail:] if tail else "")


@dataclass(slots=True)
class SearchMatch:
    """Single codebase search hit."""

    file: str
    line: int
    text: str

    def format(self) -> str:
        return f"{self.file}:{self.line}: {self.text}"


@dataclass(slots=True)
class ProjectScan:
    """Read-only summary of the project handed to the planner."""

    listing: List[str] = field(default_factory=list)
    config_files: dict[str, str] = field(default_factory=dict)
    generated: List[str] = field(default_factory=list)

    def render(self, *, config_limit: int = 1500) -> str:
        sections: list[str] = []
        if self.listing:
            sections.append("## Project layout\n" + "\n".join(f"- {entry}" for entry in self.listing))
        for name, content in self.config_files.items():
            sections.append(f"## {name}\n```\n{smart_truncate(content, config_limit)}\n```")
        if self.generated:
            sections.append(
                "## Files generated earlier in this conversation\n"
                + "\n".join(f"- {path}" for path in self.generated)
            )
        return "\n\n".join(sections) if sections else "(empty project)"


class ProjectFiles:
    """File operations confined to a single project root.

    Every path is normalised and checked against the root before any I/O
    happens; a path that escapes raises :class:`PathEscapeError`.
    """

    def __init__(self, root: Path | str, *, git: GitRepository | None = None) -> None:
        self.root = Path(root).resolve()
        self._git = git or GitRepository(self.root)

    # ----------------------------------------------------------------- paths
    @staticmethod
    def normalise(path: str) -> str:
        cleaned = (path or "").strip().replace("\\", "/")
        cleaned = cleaned.lstrip("/")
        while cleaned.startswith("./"):
            cleaned = cleaned[2:]
        return cleaned

    def resolve(self, path: str) -> Path:
        cleaned = self.normalise(path)
        if not cleaned:
            raise PathEscapeError("Empty path", details={"path": path})
        candidate = (self.root / cleaned).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise PathEscapeError(f"Path outside project root: {path}", details={"path": path})
        return candidate

    def relative(self, path: str) -> str:
        return self.resolve(path).relative_to(self.root).as_posix()

    # -------------------------------------------------------------------- I/O
    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except PathEscapeError:
            return False

    def read(self, path: str) -> str:
        target = self.resolve(path)
        return target.read_text(encoding="utf-8", errors="replace")

    def read_optional(self, path: str) -> Optional[str]:
        """Return file content or ``None`` when the file is missing, unreadable or outside the root."""
        try:
            target = self.resolve(path)
        except PathEscapeError as error:
            LOGGER.warning("%s", error)
            return None
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            LOGGER.debug("Could not read %s: %s", path, error)
            return None

    def read_with_variants(
        self,
        path: str,
        prefixes: Sequence[str] = DEFAULT_PATH_PREFIXES,
    ) -> Optional[tuple[str, str]]:
        """Read ``path``, retrying with a known prefix stripped or added.

        Returns ``(resolved_relative_path, content)`` for the first variant found.
        """
        for candidate in self.path_variants(path, prefixes):
            content = self.read_optional(candidate)
            if content is not None:
                return candidate, content
        return None

    def path_variants(self, path: str, prefixes: Sequence[str] = DEFAULT_PATH_PREFIXES) -> List[str]:
        cleaned = self.normalise(path)
        variants = [cleaned]
        for prefix in prefixes:
            if cleaned.startswith(prefix):
                variants.append(cleaned[len(prefix) :])
            else:
                variants.append(prefix + cleaned)
        seen: list[str] = []
        for variant in variants:
            if variant and variant not in seen:
                seen.append(variant)
        return seen

    def write(self, path: str, content: str) -> str:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target.relative_to(self.root).as_posix()

    def delete(self, path: str) -> bool:
        target = self.resolve(path)
        if not target.is_file():
            return False
        target.unlink()
        return True

    # ---------------------------------------------------------------- listing
    def list_directory(self, path: str = ".", *, recursive: bool = False, limit: int = 500) -> List[str]:
        """List entries below ``path`` relative to the project root; directories end in ``/``."""
        base = self.root if self.normalise(path) in {"", "."} else self.resolve(path)
        if not base.is_dir():
            return []
        entries: list[str] = []
        for entry in self._iter_entries(base, recursive=recursive):
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries

    def _iter_entries(self, base: Path, *, recursive: bool) -> Iterator[str]:
        try:
            children = sorted(base.iterdir(), key=lambda item: item.name)
        except OSError:
            return
        for child in children:
            if child.name in IGNORED_DIRECTORIES:
                continue
            relative = child.relative_to(self.root).as_posix()
            if child.is_dir():
                yield f"{relative}/"
                if recursive:
                    yield from self._iter_entries(child, recursive=True)
            else:
                yield relative

    def iter_files(self, suffixes: Iterable[str] = SEARCHABLE_SUFFIXES) -> Iterator[str]:
        wanted = tuple(suffixes)
        for current, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(name for name in dirnames if name not in IGNORED_DIRECTORIES)
            for name in sorted(filenames):
                if wanted and not name.endswith(wanted):
                    continue
                yield (Path(current) / name).relative_to(self.root).as_posix()

    # ----------------------------------------------------------------- search
    def search(
        self,
        query: str,
        *,
        include: str | None = None,
        is_regex: bool = False,
        max_results: int = 50,
    ) -> List[SearchMatch]:
        """Case-insensitive search via ``git grep`` with a manual walk as fallback."""
        if not query.strip():
            return []
        pathspecs = [include] if include else [f"*{suffix}" for suffix in SEARCHABLE_SUFFIXES]
        rows = self._git.grep(query, pathspecs=pathspecs, is_regex=is_regex) if self._git.is_repository() else None
        if rows is not None:
            matches: list[SearchMatch] = []
            for row in rows[:max_results]:
                parsed = re.match(r"^(.+?):(\d+):(.*)$", row)
                if parsed:
                    matches.append(
                        SearchMatch(parsed.group(1), int(parsed.group(2)), parsed.group(3).strip()[:MATCH_TEXT_LIMIT])
                    )
            return matches
        return self._walk_search(query, include=include, is_regex=is_regex, max_results=max_results)

    def _walk_search(self, query: str, *, include: str | None, is_regex: bool, max_results: int) -> List[SearchMatch]:
        if is_regex:
            try:
                pattern = re.compile(query, re.IGNORECASE)
            except re.error:
                pattern = re.compile(re.escape(query), re.IGNORECASE)
        else:
            pattern = re.compile(re.escape(query), re.IGNORECASE)
        matches: list[SearchMatch] = []
        for relative in self.iter_files():
            if include and not fnmatch.fnmatch(relative, include) and not fnmatch.fnmatch(
                PurePosixPath(relative).name, include
            ):
                continue
            content = self.read_optional(relative)
            if content is None:
                continue
            for number, line in enumerate(content.splitlines(), start=1):
                if pattern.search(line):
                    matches.append(SearchMatch(relative, number, line.strip()[:MATCH_TEXT_LIMIT]))
                    if len(matches) >= max_results:
                        return matches
        return matches

    # ------------------------------------------------------------------- scan
    def scan(self, *, generated: Sequence[str] = (), listing_limit: int = 80) -> ProjectScan:
        """Collect the top-level layout, key config files and earlier generated paths."""
        listing = self.list_directory(".", recursive=False, limit=listing_limit)
        for directory in ("src", "frontend/src", "backend/src"):
            if (self.root / directory).is_dir():
                listing.extend(self.list_directory(directory, recursive=False, limit=listing_limit))
        config_files: dict[str, str] = {}
        for name in KEY_CONFIG_FILES:
            content = self.read_optional(name)
            if content is not None:
                config_files[name] = content
        return ProjectScan(listing=listing[: listing_limit * 2], config_files=config_files, generated=list(generated))


__all__ = [
    "DEFAULT_PATH_PREFIXES",
    "ProjectFiles",
    "ProjectScan",
    "SearchMatch",
    "smart_truncate",
]
