"""Filesystem, version-control, shell and search collaborators."""

from .commands import CommandResult, CommandRunner
from .vcs import GitError, GitRepository
from .workspace import ProjectFiles, SearchMatch, smart_truncate

__all__ = [
    "CommandResult",
    "CommandRunner",
    "GitError",
    "GitRepository",
    "ProjectFiles",
    "SearchMatch",
    "smart_truncate",
]
