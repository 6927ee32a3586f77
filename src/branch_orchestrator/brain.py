"""LLM completion service wrapper."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from openai import AzureOpenAI

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    def complete(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> Any:
        ...


class LLMBrain:
    """Thin wrapper around the Azure OpenAI Chat Completions API with retry logic."""

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        deployment: str,
        api_version: str,
        max_retries: int = 3,
    ) -> None:
        self._client = AzureOpenAI(
            api_key=api_key,
            azure_endpoint=endpoint,
            api_version=api_version,
        )
        self._deployment = deployment
        self._max_retries = max_retries

    def complete(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> Any:
        """Send messages to Azure OpenAI and return the raw response."""

        last_exception: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                kwargs: Dict[str, Any] = {
                    "model": self._deployment,
                    "messages": messages,
                    "max_completion_tokens": 4000,
                }
                if tools:
                    kwargs["tools"] = tools
                    kwargs["tool_choice"] = "auto"

                return self._client.chat.completions.create(**kwargs)
            except Exception as exc:  # noqa: BLE001
                last_exception = exc
                if attempt < self._max_retries - 1:
                    wait_time = 2**attempt
                    logger.warning(
                        "Azure OpenAI call failed (attempt %s/%s): %s. Retrying in %ss...",
                        attempt + 1,
                        self._max_retries,
                        exc,
                        wait_time,
                    )
                    time.sleep(wait_time)
                else:
                    logger.error("Azure OpenAI call failed after retries: %s", exc)

        raise last_exception or RuntimeError("Unknown Azure OpenAI API error")


def first_message(response: Any) -> Any:
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise RuntimeError("LLM response is empty or has no choices")
    return choices[0].message


def complete_text(brain: CompletionService, system: str, user: str) -> str:
    """Run a tool-less completion and return the assistant text."""
    response = brain.complete(
        [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
    )
    return (first_message(response).content or "").strip()


def extract_json_block(raw: str) -> str:
    """Return the outermost JSON object or array embedded in raw text."""
    trimmed = (raw or "").strip()
    start_obj = trimmed.find("{")
    start_arr = trimmed.find("[")
    if start_arr >= 0 and (start_obj == -1 or start_arr < start_obj):
        start, end = start_arr, trimmed.rfind("]")
    elif start_obj >= 0:
        start, end = start_obj, trimmed.rfind("}")
    else:
        return trimmed
    if end >= start:
        return trimmed[start : end + 1]
    return trimmed


def parse_json_object(raw: str) -> Dict[str, Any]:
    payload = json.loads(extract_json_block(raw))
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    return payload
