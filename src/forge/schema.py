"""Typed records exchanged between the planning, execution and verification services."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class Intent(str, Enum):
    """What the session is expected to do with the request."""

    CHAT = "chat"
    BUILD = "build"


class StepStatus(str, Enum):
    """Lifecycle states for a plan step."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class ActionName(str, Enum):
    """Closed vocabulary of actions a plan step may request."""

    SEARCH_WEB = "search_web"
    SEARCH_CODEBASE = "search_codebase"
    GENERATE_COMPONENT = "generate_component"
    MODIFY_FILE = "modify_file"
    MODIFY_FILES = "modify_files"
    INSTALL_PACKAGES = "install_packages"
    RUN_COMMAND = "run_command"
    DELEGATE_BACKEND = "delegate_backend"
    CREATE_API = "create_api"
    READ_FILE = "read_file"
    LIST_DIRECTORY = "list_directory"
    DELETE_FILE = "delete_file"
    CHAT = "chat"


KNOWN_ACTIONS = frozenset(action.value for action in ActionName)

# Actions that write to, or delete from, the project tree.
MUTATING_ACTIONS = frozenset(
    {
        ActionName.GENERATE_COMPONENT.value,
        ActionName.MODIFY_FILE.value,
        ActionName.MODIFY_FILES.value,
        ActionName.INSTALL_PACKAGES.value,
        ActionName.DELEGATE_BACKEND.value,
        ActionName.CREATE_API.value,
        ActionName.DELETE_FILE.value,
    }
)


class StepModel(BaseModel):
    """Base model for LLM-authored payloads: unknown keys are ignored, camelCase accepted."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, validate_assignment=False)


class PlanStepBase(StepModel):
    """Fields shared by every plan step variant."""

    id: int = 0
    title: str = ""
    detail: str = ""
    status: StepStatus = StepStatus.PENDING

    @field_validator("detail", mode="before")
    @classmethod
    def _coerce_detail(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value

    @property
    def target_path(self) -> Optional[str]:
        """Return the file the step writes or reads, when it has one."""
        return None

    @property
    def is_mutating(self) -> bool:
        return getattr(self, "action", "") in MUTATING_ACTIONS


class SearchWebStep(PlanStepBase):
    action: Literal["search_web"] = "search_web"
    query: str = ""


class SearchCodebaseStep(PlanStepBase):
    action: Literal["search_codebase"] = "search_codebase"
    query: str = ""
    include_pattern: Optional[str] = Field(default=None, alias="includePattern")
    is_regex: bool = Field(default=False, alias="isRegex")


class GenerateComponentStep(PlanStepBase):
    action: Literal["generate_component"] = "generate_component"
    new_file_path: Optional[str] = Field(default=None, alias="newFilePath")

    @property
    def target_path(self) -> Optional[str]:
        return self.new_file_path


class ModifyFileStep(PlanStepBase):
    action: Literal["modify_file"] = "modify_file"
    target_file: Optional[str] = Field(default=None, alias="targetFile")

    @property
    def target_path(self) -> Optional[str]:
        return self.target_file


class ModifyFilesStep(PlanStepBase):
    action: Literal["modify_files"] = "modify_files"
    target_files: List[str] = Field(default_factory=list, alias="targetFiles")

    @property
    def target_path(self) -> Optional[str]:
        return self.target_files[0] if self.target_files else None


class InstallPackagesStep(PlanStepBase):
    action: Literal["install_packages"] = "install_packages"
    packages: List[str] = Field(default_factory=list)
    dev: bool = False

    @field_validator("packages", mode="before")
    @classmethod
    def _split_packages(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [token for token in re.split(r"[\s,]+", value) if token]
        return value


class RunCommandStep(PlanStepBase):
    action: Literal["run_command"] = "run_command"
    command: str = ""


class DelegateBackendStep(PlanStepBase):
    action: Literal["delegate_backend"] = "delegate_backend"


class CreateApiStep(PlanStepBase):
    action: Literal["create_api"] = "create_api"
    resource: str = ""
    new_file_path: Optional[str] = Field(default=None, alias="newFilePath")

    @property
    def target_path(self) -> Optional[str]:
        return self.new_file_path


class ReadFileStep(PlanStepBase):
    action: Literal["read_file"] = "read_file"
    target_file: Optional[str] = Field(default=None, alias="targetFile")

    @property
    def target_path(self) -> Optional[str]:
        return self.target_file


class ListDirectoryStep(PlanStepBase):
    action: Literal["list_directory"] = "list_directory"
    directory: str = "."


class DeleteFileStep(PlanStepBase):
    action: Literal["delete_file"] = "delete_file"
    target_file: Optional[str] = Field(default=None, alias="targetFile")

    @property
    def target_path(self) -> Optional[str]:
        return self.target_file


class ChatStep(PlanStepBase):
    action: Literal["chat"] = "chat"
    message: str = ""


PlanStep = Annotated[
    Union[
        SearchWebStep,
        SearchCodebaseStep,
        GenerateComponentStep,
        ModifyFileStep,
        ModifyFilesStep,
        InstallPackagesStep,
        RunCommandStep,
        DelegateBackendStep,
        CreateApiStep,
        ReadFileStep,
        ListDirectoryStep,
        DeleteFileStep,
        ChatStep,
    ],
    Field(discriminator="action"),
]

STEP_TYPES: tuple[type[PlanStepBase], ...] = get_args(get_args(PlanStep)[0])


class ExecutionPlan(StepModel):
    """Validated, confidence-scored plan produced once per session."""

    intent: Intent = Intent.BUILD
    confidence: int = 100
    summary: str = ""
    clarify_question: Optional[str] = Field(default=None, alias="clarifyQuestion")
    steps: List[PlanStep] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, number))

    @property
    def has_mutations(self) -> bool:
        return any(step.is_mutating for step in self.steps)


@dataclass(slots=True)
class GeneratedFile:
    """File content produced or rewritten during a session."""

    path: str
    content: str
    language: str = "text"
    description: str = ""


@dataclass(slots=True)
class Snapshot:
    """Version-control checkpoint taken before a session mutates files."""

    commit_hash: str
    label: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class RetryAttempt:
    """One escalation attempt made while recovering a failed step."""

    strategy: int
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class StepOutcome:
    """Result returned by a step handler."""

    status: StepStatus
    detail: str = ""
    generated: list[GeneratedFile] = field(default_factory=list)
    modified: list[GeneratedFile] = field(default_factory=list)
    context: str = ""
    tokens_used: int = 0
    retryable: bool = True

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.DONE

    @property
    def files_produced(self) -> list[GeneratedFile]:
        return [*self.generated, *self.modified]


TestCategory = Literal["static", "api-smoke", "functional"]
TestSeverity = Literal["pass", "warn", "fail"]


@dataclass(slots=True)
class TestResult:
    """Single verification finding."""

    __test__ = False

    id: str
    category: TestCategory
    severity: TestSeverity
    title: str
    detail: str
    file: str | None = None
    line: int | None = None


@dataclass(slots=True)
class TestReport:
    """Aggregated verification results for a session."""

    __test__ = False

    results: list[TestResult] = field(default_factory=list)
    summary: str = ""
    duration_ms: int = 0
    tokens_used: int = 0

    @property
    def passed(self) -> int:
        return sum(1 for result in self.results if result.severity == "pass")

    @property
    def warnings(self) -> int:
        return sum(1 for result in self.results if result.severity == "warn")

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if result.severity == "fail")


__all__ = [
    "ActionName",
    "ChatStep",
    "CreateApiStep",
    "DelegateBackendStep",
    "DeleteFileStep",
    "ExecutionPlan",
    "GenerateComponentStep",
    "GeneratedFile",
    "InstallPackagesStep",
    "Intent",
    "KNOWN_ACTIONS",
    "ListDirectoryStep",
    "MUTATING_ACTIONS",
    "ModifyFileStep",
    "ModifyFilesStep",
    "PlanStep",
    "PlanStepBase",
    "ReadFileStep",
    "RetryAttempt",
    "RunCommandStep",
    "STEP_TYPES",
    "SearchCodebaseStep",
    "SearchWebStep",
    "Snapshot",
    "StepOutcome",
    "StepStatus",
    "TestReport",
    "TestResult",
    "utc_now",
]
