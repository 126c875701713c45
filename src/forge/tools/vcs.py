"""Thin git wrapper used for checkpoints, diffs and codebase search.

Every command runs with its working directory pinned to the project root and
a bounded timeout; failures surface as :class:`GitError`.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

from ..errors import ForgeError

LOGGER = logging.getLogger(__name__)

DEFAULT_GITIGNORE = "node_modules/\ndist/\n.env\n.forge/\n"


class GitError(ForgeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands for one working tree."""

    def __init__(self, root: Path | str, *, timeout: float = 30.0) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitError(f"git {' '.join(args)} timed out after {error.timeout}s") from error
        except OSError as error:
            raise GitError(f"git {' '.join(args)} could not be started: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""
        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------ repository
    def is_repository(self) -> bool:
        return (self.root / ".git").exists()

    def ensure_initialised(self) -> bool:
        """Initialise a repository (with a default ``.gitignore``) when absent.

        Returns ``True`` when a new repository was created.
        """
        if self.is_repository():
            self._ensure_identity()
            return False
        self.root.mkdir(parents=True, exist_ok=True)
        self._run_git(["init"])
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(DEFAULT_GITIGNORE, encoding="utf-8")
        self._ensure_identity()
        LOGGER.info("Initialised git repository at %s", self.root)
        return True

    def _ensure_identity(self) -> None:
        for key, value in (("user.email", "agent@forge.local"), ("user.name", "Forge Agent")):
            probe = self._run_git(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                self._run_git(["config", key, value])

    # ---------------------------------------------------------------- commits
    def add_all(self) -> None:
        self._run_git(["add", "-A"])

    def commit(self, message: str, *, allow_empty: bool = True) -> str:
        """Commit the index and return the resulting ``HEAD`` hash."""
        args: List[str] = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        result = self._run_git(args, check=False)
        if result.returncode != 0:
            combined = f"{result.stdout}\n{result.stderr}"
            if "nothing to commit" not in combined:
                message_text = result.stderr.strip() or result.stdout.strip() or "unknown git error"
                raise GitError(f"git commit failed: {message_text}")
            LOGGER.debug("Nothing to commit for %r", message)
        return self.head()

    def head(self) -> str:
        result = self._run_git(["rev-parse", "HEAD"])
        return result.stdout.strip()

    # ------------------------------------------------------------------ diffs
    def changed_files(self, revision: str) -> List[str]:
        """Return tracked paths that differ between ``revision`` and the working tree."""
        result = self._run_git(["diff", "--name-only", revision])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def diff_stat(self, revision: str) -> str:
        result = self._run_git(["diff", "--stat", revision])
        return result.stdout.strip()

    def untracked_files(self) -> List[str]:
        result = self._run_git(["ls-files", "--others", "--exclude-standard"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exists_at(self, revision: str, path: str) -> bool:
        result = self._run_git(["cat-file", "-e", f"{revision}:{path}"], check=False)
        return result.returncode == 0

    def show(self, revision: str, path: str) -> str:
        result = self._run_git(["show", f"{revision}:{path}"])
        return result.stdout

    def checkout_paths(self, revision: str, paths: Sequence[str]) -> None:
        if not paths:
            return
        self._run_git(["checkout", revision, "--", *paths])

    # ----------------------------------------------------------------- search
    def grep(
        self,
        query: str,
        *,
        pathspecs: Sequence[str] = (),
        is_regex: bool = False,
        timeout: float = 15.0,
    ) -> List[str] | None:
        """Run ``git grep -n -i`` and return raw ``path:line:text`` rows.

        Returns ``None`` when git grep itself is unusable so callers can fall
        back to walking the tree.
        """
        args: List[str] = ["grep", "--untracked", "-n", "-i", "-I", "-E" if is_regex else "-F", "-e", query]
        if pathspecs:
            args.extend(["--", *pathspecs])
        try:
            result = self._run_git(args, check=False, timeout=timeout)
        except GitError as error:
            LOGGER.debug("git grep unavailable: %s", error)
            return None
        if result.returncode == 1:
            return []
        if result.returncode != 0:
            LOGGER.debug("git grep failed: %s", result.stderr.strip())
            return None
        return [line for line in result.stdout.splitlines() if line.strip()]


__all__ = ["DEFAULT_GITIGNORE", "GitError", "GitRepository"]
