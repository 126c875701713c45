"""Step execution services."""

from .backend import BackendDelegate, BackendTask
from .executor import ConfirmDelete, StepExecutor
from .generation import ComponentGenerator, GenerationRequest, files_from_response, parse_file_blocks
from .patching import PatchEngine, PatchResult
from .state import EventSink, SessionState, discard_events

__all__ = [
    "BackendDelegate",
    "BackendTask",
    "ComponentGenerator",
    "ConfirmDelete",
    "EventSink",
    "GenerationRequest",
    "PatchEngine",
    "PatchResult",
    "SessionState",
    "StepExecutor",
    "discard_events",
    "files_from_response",
    "parse_file_blocks",
]
