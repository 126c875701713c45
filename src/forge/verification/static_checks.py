"""Deterministic pattern checks over generated and modified files.

No model is involved: each check is a cheap textual heuristic keyed on the
file type. The checks understand JavaScript/TypeScript (React components,
NestJS controllers and services) and Python request-handler modules.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Iterable, Iterator, List, Sequence

from ..schema import GeneratedFile, TestResult, TestSeverity

ANY_ANNOTATION_LIMIT = 5

_JS_SUFFIXES = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})
_COMPONENT_SUFFIXES = frozenset({".jsx", ".tsx"})
_TS_SUFFIXES = frozenset({".ts", ".tsx"})

_JS_NETWORK_CALL = re.compile(r"\bfetch\(|\baxios(?:\.\w+)?\(")
_PY_NETWORK_CALL = re.compile(r"\b(?:requests|httpx|session|client)\.(?:get|post|put|patch|delete|request)\(|\burlopen\(")
_LOADING_STATE = re.compile(r"loading", re.IGNORECASE)
_EMPTY_STATE = re.compile(r"\.length\s*[=!><]|no\s*data|no\s*results|empty", re.IGNORECASE)
_FORM_VALIDATION = re.compile(r"required|validate|validation|\.trim\(\)|pattern=|minLength|maxLength", re.IGNORECASE)
_NEST_ROUTE = re.compile(r"@(?:Get|Post|Put|Delete|Patch)\(")
_PY_ROUTE = re.compile(r"@\w+\.(?:get|post|put|patch|delete|route|api_route)\(")
_PY_ROUTER = re.compile(r"\b(?:APIRouter|Blueprint|FastAPI|Flask)\(")
_HARDCODED_URL = re.compile(
    r"""(?:fetch|axios(?:\.\w+)?|requests\.\w+|httpx\.\w+)\(\s*f?['"`](https?://[^'"`]+)['"`]"""
)
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")
_SUBSCRIPTION = re.compile(r"\bsetInterval\(|\bsetTimeout\(|\baddEventListener\(")
_CLEANUP = re.compile(r"return\s*\(\s*\)\s*=>|return\s+function")
_KEY_PROP = re.compile(r"\bkey\s*=\s*\{")
_JS_TRY_CATCH = re.compile(r"\btry\s*\{.*?\bcatch\b", re.DOTALL)
_JS_PROMISE_CATCH = re.compile(r"\.catch\(")
_PY_TRY_EXCEPT = re.compile(r"^\s*try\s*:.*?^\s*except\b", re.DOTALL | re.MULTILINE)
_TS_ANY = re.compile(r":\s*any\b")
_PY_ANY = re.compile(r":\s*Any\b|->\s*Any\b")

Finding = tuple[TestSeverity, str, str]
Check = Callable[[str, str], Iterator[Finding]]


@dataclass(slots=True)
class FileKind:
    suffix: str
    name: str

    @classmethod
    def of(cls, path: str) -> "FileKind":
        pure = PurePosixPath(path)
        return cls(suffix=pure.suffix.lower(), name=pure.name)

    @property
    def is_js(self) -> bool:
        return self.suffix in _JS_SUFFIXES

    @property
    def is_component(self) -> bool:
        return self.suffix in _COMPONENT_SUFFIXES

    @property
    def is_python(self) -> bool:
        return self.suffix == ".py"


def _has_js_error_handling(content: str) -> bool:
    return bool(_JS_TRY_CATCH.search(content) or _JS_PROMISE_CATCH.search(content))


def _has_py_error_handling(content: str) -> bool:
    return bool(_PY_TRY_EXCEPT.search(content))


# ----------------------------------------------------------------- checks
def check_error_handling(path: str, content: str) -> Iterator[Finding]:
    kind = FileKind.of(path)
    if kind.is_js and _JS_NETWORK_CALL.search(content):
        handled = _has_js_error_handling(content)
    elif kind.is_python and _PY_NETWORK_CALL.search(content):
        handled = _has_py_error_handling(content)
    else:
        return
    if handled:
        yield "pass", "API error handling present", "Network calls are wrapped in error handling"
    else:
        yield (
            "fail",
            "API calls without error handling",
            "Network calls found but no try/catch or .catch(): request errors will surface as crashes",
        )


def check_loading_state(path: str, content: str) -> Iterator[Finding]:
    if not FileKind.of(path).is_component or not _JS_NETWORK_CALL.search(content):
        return
    if _LOADING_STATE.search(content):
        yield "pass", "Loading state present", "Loading indicator found for async data fetching"
    else:
        yield (
            "warn",
            "No loading state for API calls",
            "Component fetches data but has no loading indicator; users see blank or stale data while waiting",
        )


def check_empty_state(path: str, content: str) -> Iterator[Finding]:
    if not FileKind.of(path).is_component:
        return
    if (".map(" in content or ".filter(" in content) and not _EMPTY_STATE.search(content):
        yield "warn", "No empty state handling", "Data is mapped or filtered but nothing is shown when the list is empty"


def check_form_validation(path: str, content: str) -> Iterator[Finding]:
    if not FileKind.of(path).is_component:
        return
    if ("<form" in content or "onSubmit" in content) and not _FORM_VALIDATION.search(content):
        yield "warn", "Form without validation", "Form submission found but no input validation before the request"


def check_module_boundary(path: str, content: str) -> Iterator[Finding]:
    kind = FileKind.of(path)
    if kind.is_js and ".controller." in kind.name and not _NEST_ROUTE.search(content):
        yield (
            "fail",
            "Controller has no route decorators",
            "Controller file has no @Get/@Post/@Put/@Delete/@Patch decorators, so no endpoints are exposed",
        )
    if kind.is_js and ".service." in kind.name and "@Injectable" not in content:
        yield (
            "fail",
            "Service missing @Injectable decorator",
            "Service file without @Injectable(): dependency injection will fail at runtime",
        )
    if kind.is_python and _PY_ROUTER.search(content) and not _PY_ROUTE.search(content):
        yield (
            "fail",
            "Router has no route handlers",
            "Module creates a router or application but registers no routes",
        )


def check_hardcoded_urls(path: str, content: str) -> Iterator[Finding]:
    kind = FileKind.of(path)
    if not (kind.is_js or kind.is_python):
        return
    urls = [match.group(1) for match in _HARDCODED_URL.finditer(content)]
    external = [url for url in urls if not any(host in url for host in _LOCAL_HOSTS)]
    if external:
        yield (
            "warn",
            "Hardcoded external API URL",
            f"Requests use a hardcoded URL ({external[0]}) instead of configuration; this breaks on another domain",
        )


def check_component_export(path: str, content: str) -> Iterator[Finding]:
    if FileKind.of(path).is_component and "export" not in content:
        yield "fail", "Component not exported", "File has no export statement, so the component cannot be imported"


def check_subscription_cleanup(path: str, content: str) -> Iterator[Finding]:
    if not FileKind.of(path).is_js or "useEffect" not in content:
        return
    if _SUBSCRIPTION.search(content) and not _CLEANUP.search(content):
        yield (
            "warn",
            "useEffect missing cleanup",
            "Timers or event listeners are registered in useEffect without a cleanup function; this leaks",
        )


def check_list_keys(path: str, content: str) -> Iterator[Finding]:
    if FileKind.of(path).is_component and ".map(" in content and not _KEY_PROP.search(content):
        yield "warn", "Missing key prop in .map()", "List rendering with .map() but no key prop"


def check_any_annotations(path: str, content: str) -> Iterator[Finding]:
    kind = FileKind.of(path)
    if kind.suffix in _TS_SUFFIXES:
        count = len(_TS_ANY.findall(content))
    elif kind.is_python:
        count = len(_PY_ANY.findall(content))
    else:
        return
    if count > ANY_ANNOTATION_LIMIT:
        yield "warn", f"Excessive 'any' types ({count})", f"{count} uses of an 'any' type defeat static typing"


DEFAULT_CHECKS: tuple[Check, ...] = (
    check_error_handling,
    check_loading_state,
    check_empty_state,
    check_form_validation,
    check_module_boundary,
    check_hardcoded_urls,
    check_component_export,
    check_subscription_cleanup,
    check_list_keys,
    check_any_annotations,
)


def run_static_checks(files: Iterable[GeneratedFile], checks: Sequence[Check] = DEFAULT_CHECKS) -> List[TestResult]:
    """Run every check against every file; result ids are ``static-1``, ``static-2``, ..."""
    results: list[TestResult] = []
    for item in files:
        for check in checks:
            for severity, title, detail in check(item.path, item.content):
                results.append(
                    TestResult(
                        id=f"static-{len(results) + 1}",
                        category="static",
                        severity=severity,
                        title=title,
                        detail=detail,
                        file=item.path,
                    )
                )
    return results


__all__ = ["DEFAULT_CHECKS", "run_static_checks"]
