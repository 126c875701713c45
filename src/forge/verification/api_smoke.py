"""Live GET probes against routes declared in generated request-handler modules."""

from __future__ import annotations

import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Iterable, List, Optional

from ..schema import GeneratedFile, TestResult

LOGGER = logging.getLogger(__name__)

# Receives (url, timeout) and returns the HTTP status; raises OSError when unreachable.
Probe = Callable[[str, float], int]

_NEST_CONTROLLER = re.compile(r"""@Controller\(\s*(?:['"`]([^'"`]*)['"`])?\s*\)""")
_NEST_GET = re.compile(r"""@Get\(\s*(?:['"`]([^'"`]*)['"`])?\s*\)""")
_PY_PREFIX = re.compile(r"""\b(?:APIRouter|Blueprint)\([^)]*?\b(?:prefix|url_prefix)\s*=\s*['"]([^'"]*)['"]""", re.DOTALL)
_PY_GET = re.compile(r"""@\w+\.get\(\s*['"]([^'"]*)['"]""")
_PY_ROUTE = re.compile(r"""@\w+\.route\(\s*['"]([^'"]*)['"](?P<rest>[^)]*)\)""")
_PATH_PARAMETER = re.compile(r":\w+|\{[^}]*\}|<[^>]*>")


@dataclass(slots=True)
class RouteModule:
    path: str
    name: str
    routes: List[str]


def _join(*parts: str) -> str:
    segments = [segment for part in parts for segment in (part or "").split("/") if segment]
    return "/" + "/".join(segments)


def extract_routes(file: GeneratedFile) -> Optional[RouteModule]:
    """Return the read-only routes a handler module declares, or ``None`` for other files."""
    pure = PurePosixPath(file.path)
    if pure.suffix in {".ts", ".js"} and ".controller." in pure.name:
        controller = _NEST_CONTROLLER.search(file.content)
        if controller is None:
            return None
        prefix = controller.group(1) or ""
        routes = [_join(prefix, match.group(1) or "") for match in _NEST_GET.finditer(file.content)]
        return RouteModule(path=file.path, name=prefix or pure.stem, routes=routes)
    if pure.suffix == ".py" and ("APIRouter(" in file.content or "Blueprint(" in file.content):
        prefix_match = _PY_PREFIX.search(file.content)
        prefix = prefix_match.group(1) if prefix_match else ""
        routes = [_join(prefix, match.group(1)) for match in _PY_GET.finditer(file.content)]
        for match in _PY_ROUTE.finditer(file.content):
            rest = match.group("rest")
            if "methods" in rest and "GET" not in rest.upper():
                continue
            routes.append(_join(prefix, match.group(1)))
        return RouteModule(path=file.path, name=prefix.strip("/") or pure.stem, routes=routes)
    return None


def http_probe(url: str, timeout: float) -> int:
    request = urllib.request.Request(url, method="GET", headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            return int(response.status)
    except urllib.error.HTTPError as error:
        return int(error.code)


class ApiSmokeTester:
    """Probe each module's GET routes, at most ``max_routes`` per module.

    2xx/3xx passes, 404 fails (the route is not registered), any other status
    warns, and an unreachable server warns because it may simply not be running.
    Routes with path parameters are skipped since no valid value is known.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        *,
        timeout: float = 10.0,
        max_routes: int = 5,
        probe: Probe | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_routes = max_routes
        self._probe = probe or http_probe

    def run(self, files: Iterable[GeneratedFile]) -> List[TestResult]:
        results: list[TestResult] = []

        def add(severity: str, title: str, detail: str, path: str) -> None:
            results.append(
                TestResult(
                    id=f"api-{len(results) + 1}",
                    category="api-smoke",
                    severity=severity,  # type: ignore[arg-type]
                    title=title,
                    detail=detail,
                    file=path,
                )
            )

        for file in files:
            module = extract_routes(file)
            if module is None:
                continue
            routes = [route for route in module.routes if not _PATH_PARAMETER.search(route)]
            if not routes:
                add(
                    "pass",
                    f"Module {module.name}: no GET endpoints to smoke test",
                    "Only write endpoints or parameterised routes found; skipping (unsafe to call blind)",
                    file.path,
                )
                continue
            for route in routes[: self.max_routes]:
                url = f"{self.base_url}{route}"
                try:
                    status = self._probe(url, self.timeout)
                except (OSError, ValueError) as error:
                    LOGGER.debug("Smoke probe %s failed: %s", url, error)
                    add(
                        "warn",
                        f"GET {route}: connection failed",
                        f"Could not reach the server at {self.base_url} (is it running?); skipping",
                        file.path,
                    )
                    continue
                if 200 <= status < 400:
                    add("pass", f"GET {route} -> {status}", "Endpoint responds successfully", file.path)
                elif status == 404:
                    add(
                        "fail",
                        f"GET {route} -> 404 Not Found",
                        "Endpoint not registered: check module imports and router registration",
                        file.path,
                    )
                else:
                    add(
                        "warn",
                        f"GET {route} -> {status}",
                        "Endpoint responded with an unexpected status; it may need auth or query parameters",
                        file.path,
                    )
        return results


__all__ = ["ApiSmokeTester", "Probe", "RouteModule", "extract_routes", "http_probe"]
