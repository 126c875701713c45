"""Web search client used by ``search_web`` steps."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

LOGGER = logging.getLogger(__name__)

# Receives (url, headers) and returns the raw response body.
SearchTransport = Callable[[str, Dict[str, str]], str]


class SearchError(RuntimeError):
    """Raised when the search provider cannot be reached or returns garbage."""


@dataclass(slots=True)
class SearchResult:
    title: str
    url: str
    description: str = ""


class WebSearchClient:
    """HTTPS GET client for a Brave-style web search endpoint."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        *,
        count: int = 5,
        timeout: float = 15.0,
        transport: Optional[SearchTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.count = count
        self.timeout = timeout
        self._custom_transport = transport is not None
        self._transport = transport or self._http_transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._custom_transport

    def search(self, query: str, *, count: Optional[int] = None) -> List[SearchResult]:
        params = urllib.parse.urlencode({"q": query, "count": count or self.count})
        url = f"{self.endpoint}?{params}"
        headers = {"Accept": "application/json", "X-Subscription-Token": self.api_key or ""}
        raw = self._transport(url, headers)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as error:
            raise SearchError(f"Search provider returned invalid JSON: {raw[:200]}") from error
        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> List[SearchResult]:
        if not isinstance(data, Mapping):
            return []
        web = data.get("web")
        items = web.get("results") if isinstance(web, Mapping) else data.get("results")
        results: list[SearchResult] = []
        for item in items or []:
            if not isinstance(item, Mapping):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title") or ""),
                    url=str(item.get("url") or ""),
                    description=str(item.get("description") or item.get("snippet") or ""),
                )
            )
        return results

    def _http_transport(self, url: str, headers: Dict[str, str]) -> str:
        request = urllib.request.Request(url, headers=headers, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            raise SearchError(f"Search HTTP {error.code}") from error
        except (urllib.error.URLError, TimeoutError) as error:  # pragma: no cover - network-dependent
            raise SearchError(f"Search provider unreachable: {error}") from error


def format_results(query: str, results: List[SearchResult]) -> str:
    """Render results as a context block for later prompts."""
    if not results:
        return f'Web search "{query}": no results.'
    lines = [f'Web search "{query}":']
    for index, result in enumerate(results, start=1):
        lines.append(f"{index}. {result.title} ({result.url})")
        if result.description:
            lines.append(f"   {result.description}")
    return "\n".join(lines)


__all__ = ["SearchError", "SearchResult", "SearchTransport", "WebSearchClient", "format_results"]
