"""Mutable per-session working memory shared by step handlers and the retry engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..schema import GeneratedFile
from ..tools.workspace import smart_truncate

# Receives (event name, payload) for every streamed progress update.
EventSink = Callable[[str, Mapping[str, Any]], None]


def discard_events(event: str, data: Mapping[str, Any]) -> None:
    return None


@dataclass(slots=True)
class SessionState:
    """Files and context accumulated while a plan executes.

    ``originals`` maps each touched path to its content before the session
    first wrote it (``None`` when the file did not exist), which is what the
    review diff and the rollback file list are built from.
    """

    message: str
    generated: List[GeneratedFile] = field(default_factory=list)
    modified: List[GeneratedFile] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    loaded: Dict[str, str] = field(default_factory=dict)
    originals: Dict[str, Optional[str]] = field(default_factory=dict)
    web_context: List[str] = field(default_factory=list)
    codebase_context: List[str] = field(default_factory=list)
    file_context: List[str] = field(default_factory=list)
    replies: List[str] = field(default_factory=list)
    followups: List[str] = field(default_factory=list)

    # ---------------------------------------------------------------- files
    def current_content(self, path: str) -> Optional[str]:
        """Latest in-session content for ``path`` (written or loaded), if any."""
        for collection in (self.modified, self.generated):
            for item in reversed(collection):
                if item.path == path:
                    return item.content
        return self.loaded.get(path)

    def record_write(self, file: GeneratedFile, original: Optional[str]) -> None:
        """Track a file written to disk; the first recorded original wins."""
        self.originals.setdefault(file.path, original)
        self.loaded[file.path] = file.content
        target = self.modified if self.originals[file.path] is not None else self.generated
        for index, existing in enumerate(target):
            if existing.path == file.path:
                target[index] = file
                return
        target.append(file)

    def record_delete(self, path: str, original: Optional[str]) -> None:
        self.originals.setdefault(path, original)
        self.loaded.pop(path, None)
        self.generated = [item for item in self.generated if item.path != path]
        self.modified = [item for item in self.modified if item.path != path]
        if path not in self.deleted:
            self.deleted.append(path)

    @property
    def produced(self) -> List[GeneratedFile]:
        return [*self.generated, *self.modified]

    @property
    def touched_paths(self) -> List[str]:
        return list(self.originals.keys())

    # -------------------------------------------------------------- context
    def web_block(self, limit: int = 4000) -> str:
        return smart_truncate("\n\n".join(self.web_context), limit)

    def context_block(self, limit: int = 6000) -> str:
        """Codebase search hits and read files gathered by earlier steps."""
        parts = [*self.codebase_context, *self.file_context]
        return smart_truncate("\n\n".join(parts), limit)


__all__ = ["EventSink", "SessionState", "discard_events"]
