"""Allowlisted shell command execution for plan steps."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence

from ..errors import CommandNotAllowed

LOGGER = logging.getLogger(__name__)

DEFAULT_ALLOWED_PREFIXES: tuple[str, ...] = (
    "npm install",
    "npm ls",
    "npm view",
    "npm outdated",
    "npx prisma generate",
    "yarn add",
    "yarn list",
    "pnpm add",
    "pnpm list",
    "pip install",
    "pip show",
    "pip list",
    "git status",
    "git log",
    "git diff",
    "git show",
    "git branch",
    "ls",
    "cat",
    "head",
    "tail",
    "wc",
    "pwd",
    "echo",
    "mkdir",
    "touch",
    "find",
    "grep",
)

SHELL_METACHARACTERS = frozenset(";&|`$")

# Build, lint and test invocations are left to the verification pass.
_NOOP_PATTERN = re.compile(
    r"^(?:(?:npm|yarn|pnpm)\s+(?:run\s+)?(?:build|lint|test|typecheck)\b"
    r"|npx\s+(?:tsc|eslint|jest|vitest)\b"
    r"|(?:tsc|eslint|jest|vitest|pytest)\b)"
)

PACKAGE_NAME_PATTERN = re.compile(r"^(?:@[A-Za-z0-9][\w.-]*/)?[A-Za-z0-9][\w.-]*(?:@[\w.^~<>=*+-]+)?$")

INSTALL_COMMANDS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "npm": (("npm", "install"), ("--save-dev",)),
    "yarn": (("yarn", "add"), ("--dev",)),
    "pnpm": (("pnpm", "add"), ("--save-dev",)),
    "pip": (("pip", "install"), ()),
}
_INSTALL_MANAGERS = {base: manager for manager, (base, _) in INSTALL_COMMANDS.items()}
_DEV_FLAGS = frozenset({"--save-dev", "-D", "--dev"})

_BRANCH_LIST_FLAGS = frozenset({"--list", "-l", "-a", "--all", "-r", "--remotes", "-v", "-vv", "--verbose", "--show-current"})
_GIT_WRITE_OPTIONS = ("--output", "--ext-diff")
_FIND_ACTIONS = frozenset({"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprint0", "-fprintf", "-fls"})
_PATH_WRITERS = frozenset({"mkdir", "touch"})

Runner = Callable[[List[str], Path, float], subprocess.CompletedProcess]


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of a shell command."""

    command: str
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.skipped or self.returncode == 0

    def summary(self, limit: int = 2000) -> str:
        if self.skipped:
            return f"Skipped `{self.command}`: build, lint and test commands run during verification."
        output = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        status = "succeeded" if self.ok else f"failed with exit code {self.returncode}"
        return f"`{self.command}` {status}" + (f"\n{output[:limit]}" if output else "")


def _default_runner(argv: List[str], cwd: Path, timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(argv, cwd=cwd, capture_output=True, text=True, check=False, timeout=timeout)


def validate_package_names(packages: Sequence[str]) -> List[str]:
    """Return the package list or raise :class:`CommandNotAllowed` for any invalid name."""
    names = [package.strip() for package in packages if package and package.strip()]
    if not names:
        raise CommandNotAllowed("No packages to install")
    invalid = [name for name in names if not PACKAGE_NAME_PATTERN.match(name)]
    if invalid:
        raise CommandNotAllowed(f"Invalid package name(s): {', '.join(invalid)}", details={"invalid": invalid})
    return names


class CommandRunner:
    """Run allowlisted commands without a shell inside the project root."""

    def __init__(
        self,
        root: Path | str,
        *,
        allowed_prefixes: Sequence[str] = (),
        timeout: float = 120.0,
        max_output_chars: int = 4000,
        package_manager: str = "npm",
        runner: Runner | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.allowed_prefixes = tuple(DEFAULT_ALLOWED_PREFIXES) + tuple(allowed_prefixes)
        self.timeout = timeout
        self.max_output_chars = max_output_chars
        if package_manager not in INSTALL_COMMANDS:
            raise ValueError(f"Unsupported package manager: {package_manager}")
        self.package_manager = package_manager
        self._runner = runner or _default_runner

    @staticmethod
    def is_noop(command: str) -> bool:
        return bool(_NOOP_PATTERN.match(command.strip()))

    def check(self, command: str) -> List[str]:
        """Validate ``command`` against the allowlist and return its argv."""
        stripped = command.strip()
        if not stripped:
            raise CommandNotAllowed("Empty command")
        try:
            argv = shlex.split(stripped)
        except ValueError as error:
            raise CommandNotAllowed(f"Unparseable command: {error}") from error
        # echo runs without a shell, so metacharacters in its arguments are inert.
        if argv[0] != "echo" and any(char in SHELL_METACHARACTERS for char in stripped):
            raise CommandNotAllowed(f"Shell metacharacters are not allowed: {stripped}")
        if not any(self._matches(argv, prefix) for prefix in self.allowed_prefixes):
            raise CommandNotAllowed(f"Command not in allowlist: {stripped}")
        self._check_arguments(argv, stripped)
        return argv

    @staticmethod
    def _matches(argv: Sequence[str], prefix: str) -> bool:
        expected = prefix.split()
        return len(argv) >= len(expected) and list(argv[: len(expected)]) == expected

    def _check_arguments(self, argv: Sequence[str], command: str) -> None:
        """Reject arguments that make an allowlisted program write, delete or execute."""
        program, args = argv[0], list(argv[1:])
        if program == "git" and args:
            if any(arg.startswith(_GIT_WRITE_OPTIONS) for arg in args[1:]):
                raise CommandNotAllowed(f"git output options are not allowed: {command}")
            if args[0] == "branch":
                listing = any(arg in ("--list", "-l") for arg in args[1:])
                for arg in args[1:]:
                    if arg not in _BRANCH_LIST_FLAGS and (arg.startswith("-") or not listing):
                        raise CommandNotAllowed(f"Only branch listing is allowed: {command}")
        elif program == "find":
            blocked = [arg for arg in args if arg in _FIND_ACTIONS]
            if blocked:
                raise CommandNotAllowed(f"find actions are not allowed: {', '.join(blocked)}")
        elif program in _PATH_WRITERS:
            for arg in args:
                if not arg.startswith("-") and not self._inside_root(arg):
                    raise CommandNotAllowed(f"Path is outside the project root: {arg}")
        elif tuple(argv[:2]) in _INSTALL_MANAGERS:
            self._install_request(argv)

    def _inside_root(self, path: str) -> bool:
        return (self.root / path).resolve().is_relative_to(self.root)

    @staticmethod
    def _install_request(argv: Sequence[str]) -> tuple[str, List[str], bool]:
        """Split an install command into ``(manager, packages, dev)`` after validating it."""
        manager = _INSTALL_MANAGERS[tuple(argv[:2])]
        packages: list[str] = []
        dev = False
        for arg in argv[2:]:
            if arg in _DEV_FLAGS:
                dev = True
            elif arg.startswith("-"):
                raise CommandNotAllowed(f"Install option not allowed: {arg}")
            else:
                packages.append(arg)
        if packages:
            validate_package_names(packages)
        return manager, packages, dev

    def run(self, command: str) -> CommandResult:
        """Run ``command`` if allowed; build/lint/test commands are skipped.

        Install commands naming packages go through :meth:`install` so the
        same package validation applies as for ``install_packages`` steps.
        """
        if self.is_noop(command):
            LOGGER.info("Skipping verification-owned command: %s", command)
            return CommandResult(command=command, skipped=True)
        argv = self.check(command)
        if tuple(argv[:2]) in _INSTALL_MANAGERS:
            manager, packages, dev = self._install_request(argv)
            if packages:
                return self.install(packages, dev=dev, manager=manager)
        return self._execute(argv, command)

    def install(self, packages: Sequence[str], *, dev: bool = False, manager: str | None = None) -> CommandResult:
        names = validate_package_names(packages)
        base, dev_flags = INSTALL_COMMANDS[manager or self.package_manager]
        argv = [*base, *(dev_flags if dev else ()), *names]
        return self._execute(argv, " ".join(argv))

    def _execute(self, argv: List[str], display: str) -> CommandResult:
        LOGGER.info("Running command: %s", display)
        try:
            process = self._runner(argv, self.root, self.timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(command=display, returncode=124, stderr=f"Timed out after {self.timeout:g}s")
        except OSError as error:
            return CommandResult(command=display, returncode=127, stderr=str(error))
        return CommandResult(
            command=display,
            returncode=process.returncode,
            stdout=self._cap(process.stdout),
            stderr=self._cap(process.stderr),
        )

    def _cap(self, value: str | bytes | None) -> str:
        if value is None:
            return ""
        text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        if len(text) <= self.max_output_chars:
            return text
        return text[: self.max_output_chars] + "\n... output truncated ..."


__all__ = [
    "CommandResult",
    "CommandRunner",
    "DEFAULT_ALLOWED_PREFIXES",
    "PACKAGE_NAME_PATTERN",
    "Runner",
    "validate_package_names",
]
