"""Client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import logging
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "CallLogger",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponse",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns text that does not match the expected schema.

    The completed response is attached so callers can still account for the
    tokens the call consumed.
    """

    def __init__(self, message: str, *, response: "LLMResponse | None" = None) -> None:
        super().__init__(message)
        self.response = response


class LLMRetryError(LLMClientError):
    """Raised after exhausting transport retries."""


@dataclass(slots=True)
class LLMRequest:
    """Provider-neutral request payload sent to a chat model."""

    prompt: str
    system_prompt: str = ""
    history: List[Dict[str, str]] = field(default_factory=list)
    model: Optional[str] = None
    max_output_tokens: int = 8192
    purpose: str = "completion"
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0

    def messages(self) -> list[Dict[str, str]]:
        """Return the history followed by the user prompt in chat-message form."""
        messages: list[Dict[str, str]] = []
        for entry in self.history:
            role = str(entry.get("role") or "").strip().lower()
            content = entry.get("content")
            if role not in {"user", "assistant"} or not isinstance(content, str) or not content:
                continue
            messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass(slots=True)
class LLMResponse:
    """Text returned by a model plus the token usage reported by the provider."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


CallLogger = Callable[[LLMRequest, Optional[LLMResponse], Optional[Exception]], None]


class LLMClient:
    """High-level helper that retries transport failures and validates JSON responses."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        call_logger: CallLogger | None = None,
    ) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self.call_logger = call_logger

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, request: LLMRequest) -> LLMResponse:
        """Send ``request`` and return the raw text response.

        Transport failures are retried up to the configured attempt count;
        every attempt is reported to the call logger.
        """
        model = request.model or self._model
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = self._raw_invoke(request, model)
            except LLMTransportError as error:
                last_error = error
                self._log_call(request, None, error)
                LOGGER.warning(
                    "LLM transport failure (%s, attempt %s/%s): %s",
                    request.purpose,
                    attempt,
                    self._max_attempts,
                    error,
                )
                if attempt >= self._max_attempts:
                    break
                time.sleep(self._retry_delay)
                continue
            except LLMClientError as error:
                self._log_call(request, None, error)
                raise
            if not response.model:
                response.model = model
            self._log_call(request, response, None)
            return response

        raise LLMRetryError(
            f"Failed to obtain a completion after {self._max_attempts} attempt(s) for model {model}"
        ) from last_error

    def invoke_structured(self, request: LLMRequest, response_model: Type[T]) -> tuple[T, LLMResponse]:
        """Complete ``request`` and validate the first JSON value in the reply against ``response_model``."""
        response = self.complete(request)
        try:
            data = self.parse_json(response.text)
            validated = _cached_type_adapter(response_model).validate_python(data)
        except LLMResponseFormatError as error:
            raise LLMResponseFormatError(str(error), response=response) from error
        except ValidationError as error:
            name = getattr(response_model, "__name__", str(response_model))
            raise LLMResponseFormatError(
                f"Model response did not match {name}: {error.error_count()} validation error(s)",
                response=response,
            ) from error
        return validated, response

    def _raw_invoke(self, request: LLMRequest, model: str) -> LLMResponse:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    def _log_call(
        self,
        request: LLMRequest,
        response: Optional[LLMResponse],
        error: Optional[Exception],
    ) -> None:
        if self.call_logger is None:
            return
        try:
            self.call_logger(request, response, error)
        except Exception:  # logging must never fail a call
            LOGGER.debug("Call logger raised; ignoring.", exc_info=True)

    @staticmethod
    def parse_json(raw_response: str) -> Any:
        """Extract and parse the first JSON object or array embedded in ``raw_response``."""
        text = (raw_response or "").strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        text = _normalise_json_string(text)
        candidates = [_strip_code_fence(text)]
        embedded = _first_json_value(candidates[0])
        if embedded and embedded not in candidates:
            candidates.append(embedded)

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
            try:
                return json.loads(_strip_trailing_commas(candidate))
            except json.JSONDecodeError:
                pythonic = _coerce_python_literal(candidate)
                if pythonic is not None:
                    return pythonic

        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


def _strip_code_fence(payload: str) -> str:
    """Remove a Markdown code fence wrapping the payload, if present."""
    match = re.search(r"```[A-Za-z0-9_-]*\s*\n(.*?)```", payload, re.DOTALL)
    if match and payload.lstrip().startswith("```"):
        return match.group(1).strip()
    return payload


def _normalise_json_string(payload: str) -> str:
    """Normalise typographic characters models like to emit."""
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _first_json_value(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` span, ignoring brackets inside strings."""
    start: int | None = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and start is not None:
            in_string = True
        elif char in "{[":
            if start is None:
                start = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and start is not None:
                return text[start : index + 1].strip()
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing (single quotes, ``True``/``None``)."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, TypeError, MemoryError, RecursionError):
        return None
    if not isinstance(literal, (dict, list, tuple)):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


@lru_cache(maxsize=None)
def _cached_type_adapter(annotation: Any) -> TypeAdapter:
    return TypeAdapter(annotation)
