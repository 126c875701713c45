"""Version-control checkpoints with file-scoped rollback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from .schema import Snapshot, utc_now
from .telemetry import emit_event
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "[forge-snapshot]"
COMMIT_PREFIX = "[forge]"


@dataclass(slots=True)
class SnapshotDiff:
    """Read-only comparison between a checkpoint and the working tree."""

    checkpoint: str
    changed_files: List[str] = field(default_factory=list)
    stat: str = ""


@dataclass(slots=True)
class RollbackResult:
    checkpoint: str
    restored: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def files_reverted(self) -> int:
        return len(self.restored) + len(self.deleted)


def _normalise(path: str) -> str:
    cleaned = path.strip().replace("\\", "/").lstrip("/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def path_matches(candidate: str, touched: Iterable[str]) -> bool:
    """Return ``True`` when ``candidate`` equals, or suffix-matches on a path boundary, any touched path."""
    left = _normalise(candidate)
    for entry in touched:
        right = _normalise(entry)
        if not right:
            continue
        if left == right or left.endswith("/" + right) or right.endswith("/" + left):
            return True
    return False


class SnapshotManager:
    """Create checkpoints before a session mutates files and undo them selectively."""

    def __init__(self, git: GitRepository) -> None:
        self.git = git

    def create(self, label: str | None = None) -> Snapshot:
        """Stage everything and commit a checkpoint, initialising git when needed."""
        text = label or "Before agent changes"
        timestamp = utc_now()
        self.git.ensure_initialised()
        self.git.add_all()
        commit_hash = self.git.commit(f"{SNAPSHOT_PREFIX} {text} - {timestamp.isoformat()}", allow_empty=True)
        LOGGER.info("Created snapshot %s (%s)", commit_hash[:12], text)
        emit_event("snapshot.created", commit=commit_hash, label=text)
        return Snapshot(commit_hash=commit_hash, label=text, timestamp=timestamp)

    def commit(self, label: str) -> str:
        """Commit the current working tree after a session finishes writing files."""
        self.git.add_all()
        commit_hash = self.git.commit(f"{COMMIT_PREFIX} {label}", allow_empty=False)
        emit_event("snapshot.committed", commit=commit_hash, label=label)
        return commit_hash

    def changed_paths(self, checkpoint: str) -> List[str]:
        """Tracked files changed since ``checkpoint`` plus files created after it."""
        changed = set(self.git.changed_files(checkpoint))
        for path in self.git.untracked_files():
            changed.add(path)
        return sorted(changed)

    def diff(self, checkpoint: str) -> SnapshotDiff:
        return SnapshotDiff(
            checkpoint=checkpoint,
            changed_files=self.changed_paths(checkpoint),
            stat=self.git.diff_stat(checkpoint),
        )

    def rollback(self, checkpoint: str, touched: Sequence[str]) -> RollbackResult:
        """Revert only the touched files to their ``checkpoint`` content.

        Files that did not exist at the checkpoint are deleted. Changes to any
        file outside ``touched`` are left alone.
        """
        result = RollbackResult(checkpoint=checkpoint)
        if not touched:
            LOGGER.info("Rollback to %s requested with no touched files; nothing to do.", checkpoint[:12])
            return result
        self.git.git("rev-parse", "--verify", f"{checkpoint}^{{commit}}")

        selected = [path for path in self.changed_paths(checkpoint) if path_matches(path, touched)]
        to_restore: list[str] = []
        for path in selected:
            if self.git.exists_at(checkpoint, path):
                to_restore.append(path)
            else:
                result.deleted.append(path)

        self.git.checkout_paths(checkpoint, to_restore)
        result.restored.extend(to_restore)
        for path in result.deleted:
            target = self.git.root / path
            try:
                target.unlink(missing_ok=True)
            except OSError as error:
                raise GitError(f"Unable to delete {path} during rollback: {error}") from error

        LOGGER.info(
            "Rolled back %s file(s) to %s (%s restored, %s deleted)",
            result.files_reverted,
            checkpoint[:12],
            len(result.restored),
            len(result.deleted),
        )
        emit_event("snapshot.rollback", commit=checkpoint, restored=result.restored, deleted=result.deleted)
        return result


__all__ = ["RollbackResult", "SnapshotDiff", "SnapshotManager", "path_matches"]
