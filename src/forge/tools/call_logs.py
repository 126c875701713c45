"""Persist every LLM call as a structured JSON log under the data directory."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.llm_client import LLMRequest, LLMResponse
from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)


class CallLogWriter:
    """Callable suitable for :attr:`LLMClient.call_logger`.

    Write failures are logged at debug level and otherwise ignored.
    """

    def __init__(self, root: Path | str, *, session_id: str) -> None:
        self.root = Path(root) / "calls"
        self.session_id = session_id
        self._sequence = 0

    def __call__(
        self,
        request: LLMRequest,
        response: Optional[LLMResponse],
        error: Optional[Exception],
    ) -> Optional[Path]:
        self._sequence += 1
        timestamp = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "session_id": self.session_id,
            "sequence": self._sequence,
            "timestamp": timestamp.isoformat(),
            "purpose": request.purpose,
            "step_id": request.metadata.get("step_id"),
            "model": request.model,
            "request": {
                "system_prompt": request.system_prompt,
                "prompt": request.prompt,
                "history_messages": len(request.history),
                "max_output_tokens": request.max_output_tokens,
                "metadata": {key: str(value) for key, value in request.metadata.items()},
            },
            "response": None,
            "error": None,
        }
        if response is not None:
            payload["response"] = {
                "text": response.text,
                "model": response.model,
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
            }
        if error is not None:
            payload["error"] = {"type": type(error).__name__, "message": str(error)}

        filename = (
            f"{slugify(self.session_id, max_length=40)}__{self._sequence:03d}__"
            f"{slugify(request.purpose, fallback='call', max_length=40)}__{timestamp.strftime('%Y%m%dT%H%M%SZ')}.json"
        )
        path = self.root / filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
        except OSError as write_error:
            LOGGER.debug("Unable to write call log %s: %s", path, write_error)
            return None
        return path


def load_call_log(path: Path | str) -> Dict[str, Any]:
    """Load a stored call log from disk."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


__all__ = ["CallLogWriter", "load_call_log"]
