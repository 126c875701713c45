"""HTTP clients for the Anthropic and OpenAI chat APIs plus a registry-driven router."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Mapping, Optional

from .llm_client import (
    CallLogger,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponse,
    LLMResponseFormatError,
    LLMTransportError,
)
from .registry import DEFAULT_ORCHESTRATOR, get_model

__all__ = ["AnthropicClient", "OpenAIClient", "RoutingClient", "Transport", "build_client"]

LOGGER = logging.getLogger(__name__)

# Receives (url, headers, JSON payload) and returns the raw response body.
Transport = Callable[[str, Dict[str, str], Dict[str, Any]], str]

_USER_AGENT = "forge-agent/0.3"


class _HTTPChatClient(LLMClient):
    """Shared plumbing for JSON-over-HTTPS chat providers."""

    provider = ""
    default_url = ""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = DEFAULT_ORCHESTRATOR,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        call_logger: CallLogger | None = None,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay, call_logger=call_logger)
        self._api_key = api_key
        self._base_url = base_url or self.default_url
        self._timeout = timeout
        self._transport = transport or self._http_transport
        if transport is None and not api_key:
            raise ValueError(f"An API key is required for the {self.provider} client.")

    def _raw_invoke(self, request: LLMRequest, model: str) -> LLMResponse:
        payload = self.build_payload(request, model)
        try:
            raw = self._transport(self._base_url, self._headers(), payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(f"{self.provider} returned a non-JSON body: {raw[:200]}") from error
        if not isinstance(data, Mapping):
            raise LLMResponseFormatError(f"{self.provider} returned an unexpected body.")
        return self.parse_response(data, model)

    def build_payload(self, request: LLMRequest, model: str) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: Mapping[str, Any], model: str) -> LLMResponse:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "User-Agent": _USER_AGENT}

    def _http_transport(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> str:
        """Default transport built on ``urllib``."""
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"{self.provider} request timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message[:500]}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach {self.provider}: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")


class AnthropicClient(_HTTPChatClient):
    """Adapter for the Anthropic Messages API."""

    provider = "anthropic"
    default_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def build_payload(self, request: LLMRequest, model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_output_tokens,
            "messages": request.messages(),
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.temperature:
            payload["temperature"] = request.temperature
        return payload

    def parse_response(self, data: Mapping[str, Any], model: str) -> LLMResponse:
        text = ""
        content = data.get("content")
        if isinstance(content, list):
            parts = [
                str(item.get("text") or "")
                for item in content
                if isinstance(item, Mapping) and item.get("type", "text") == "text"
            ]
            text = "".join(parts)
        usage = data.get("usage") if isinstance(data.get("usage"), Mapping) else {}
        return LLMResponse(
            text=text,
            input_tokens=_int(usage.get("input_tokens")),
            output_tokens=_int(usage.get("output_tokens")),
            model=str(data.get("model") or model),
        )

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = self._api_key or ""
        headers["anthropic-version"] = self.api_version
        return headers


class OpenAIClient(_HTTPChatClient):
    """Adapter for the OpenAI Chat Completions API."""

    provider = "openai"
    default_url = "https://api.openai.com/v1/chat/completions"

    def build_payload(self, request: LLMRequest, model: str) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.messages())
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_output_tokens,
        }
        if request.temperature:
            payload["temperature"] = request.temperature
        return payload

    def parse_response(self, data: Mapping[str, Any], model: str) -> LLMResponse:
        text = ""
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] if isinstance(choices[0], Mapping) else {}
            message = first.get("message") if isinstance(first.get("message"), Mapping) else {}
            text = str(message.get("content") or "")
        usage = data.get("usage") if isinstance(data.get("usage"), Mapping) else {}
        input_tokens = _int(usage.get("prompt_tokens"))
        output_tokens = _int(usage.get("completion_tokens"))
        if not input_tokens and not output_tokens:
            output_tokens = _int(usage.get("total_tokens"))
        return LLMResponse(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=str(data.get("model") or model),
        )

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self._api_key or ''}"
        return headers


class RoutingClient(LLMClient):
    """Dispatch each request to the provider that serves the requested model."""

    def __init__(
        self,
        providers: Mapping[str, LLMClient],
        *,
        model: str = DEFAULT_ORCHESTRATOR,
        call_logger: CallLogger | None = None,
    ) -> None:
        # Providers retry on their own; the router makes a single attempt.
        super().__init__(model=model, max_attempts=1, call_logger=call_logger)
        self._providers = dict(providers)

    def _raw_invoke(self, request: LLMRequest, model: str) -> LLMResponse:
        info = get_model(model)
        if info is None:
            raise LLMClientError(f"Unknown model: {model}")
        client = self._providers.get(info.provider)
        if client is None:
            raise LLMClientError(f"{info.provider} API key not configured for model {model}.")
        routed = LLMRequest(
            prompt=request.prompt,
            system_prompt=request.system_prompt,
            history=list(request.history),
            model=model,
            max_output_tokens=request.max_output_tokens,
            purpose=request.purpose,
            metadata=dict(request.metadata),
            temperature=request.temperature,
        )
        return client.complete(routed)


def build_client(
    *,
    anthropic_api_key: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    model: str = DEFAULT_ORCHESTRATOR,
    timeout: float = 120.0,
    max_attempts: int = 3,
    retry_delay: float = 0.5,
    call_logger: CallLogger | None = None,
) -> RoutingClient:
    """Build a router over every provider that has credentials configured."""
    providers: Dict[str, LLMClient] = {}
    options = {"timeout": timeout, "max_attempts": max_attempts, "retry_delay": retry_delay}
    if anthropic_api_key:
        providers["anthropic"] = AnthropicClient(api_key=anthropic_api_key, **options)
    if openai_api_key:
        providers["openai"] = OpenAIClient(api_key=openai_api_key, **options)
    if not providers:
        LOGGER.warning("No LLM provider credentials configured; model calls will fail.")
    return RoutingClient(providers, model=model, call_logger=call_logger)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
