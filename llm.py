"""Gateway to the OpenAI chat-completions API.

One synchronous request per question, no retries. Failures are raised as
``GatewayError`` subclasses carrying a diagnostic context that never includes
the API key. Successful calls are appended to the prompt log and reported on
the ``tutor.llm`` logger as one JSON line.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import requests

import prompt_log
from env_validation import get_env_int
from schemas import ChatMessage

logger = logging.getLogger(__name__)

# --------- Model/endpoint from environment ---------
OPENAI_API_URL = os.getenv("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
MODEL_ID = os.getenv("OPENAI_MODEL", "gpt-5-nano")
MAX_COMPLETION_TOKENS = get_env_int("OPENAI_MAX_COMPLETION_TOKENS", 512)
REQUEST_TIMEOUT_SECONDS = 30
_RAW_RESPONSE_PREVIEW_CHARS = 2000

_LLM_LOGGER = logging.getLogger("tutor.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False


def configured_api_key() -> str:
    """Return the OpenAI key, read fresh so a new key applies without restart."""

    return (os.getenv("OPENAI_API_KEY") or "").strip()


# --------- Errors ---------
class GatewayError(RuntimeError):
    """Base class for failed tutor model calls."""

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def describe(self) -> str:
        lines = [f"{type(self).__name__}: {self.message}"]
        if self.context:
            try:
                encoded = json.dumps(self.context, ensure_ascii=False, indent=2, default=str)
            except (TypeError, ValueError):
                encoded = repr(self.context)
            lines.append(f"Context: {encoded}")
        return "\n".join(lines)


class TransportError(GatewayError):
    """The request never produced an HTTP response (connect, DNS, timeout)."""


class ResponseFormatError(GatewayError):
    """The response body was not a JSON object."""


class ProviderError(GatewayError):
    """The provider answered with an HTTP error status."""

    def __init__(self, message: str, *, status_code: int, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message, context=context)
        self.status_code = status_code


class EmptyAnswerError(GatewayError):
    """No choice in the response carried usable text."""


# --------- Response content ---------
@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Parts:
    items: Tuple["Content", ...]


Content = Union[Text, Parts]


def parse_content(raw: Any) -> Optional[Content]:
    """Read a message ``content`` field into ``Text`` or ``Parts``.

    List entries are taken as plain strings, else as a part's ``text``
    string, else as a part's nested ``content``. Nested content that renders
    blank is dropped; anything else unrecognised is ignored.
    """

    if isinstance(raw, str):
        return Text(raw)
    if not isinstance(raw, list):
        return None

    items = []
    for part in raw:
        if isinstance(part, str):
            items.append(Text(part))
        elif isinstance(part, Mapping):
            if isinstance(part.get("text"), str):
                items.append(Text(part["text"]))
            elif "content" in part:
                nested = parse_content(part["content"])
                if nested is not None and render_content(nested) is not None:
                    items.append(nested)
    return Parts(tuple(items))


def _concat(content: Content) -> str:
    if isinstance(content, Text):
        return content.value
    return "".join(_concat(item) for item in content.items)


def render_content(content: Optional[Content]) -> Optional[str]:
    if content is None:
        return None
    text = _concat(content)
    return text if text.strip() else None


def extract_answer(response: Any) -> Optional[str]:
    """Pull the answer text out of a chat-completions response.

    Choices are tried in order. A refusal is a displayable answer, so it is
    used when a choice has no usable content.
    """

    if not isinstance(response, Mapping):
        return None
    choices = response.get("choices")
    if not isinstance(choices, list):
        return None

    for choice in choices:
        if not isinstance(choice, Mapping):
            continue
        message = choice.get("message")
        if not isinstance(message, Mapping):
            continue

        text = render_content(parse_content(message.get("content")))
        if text is not None:
            return text

        refusal = message.get("refusal")
        if isinstance(refusal, str) and refusal.strip():
            return refusal.strip()
    return None


# --------- Outbound call ---------
def build_payload(messages: Sequence[ChatMessage]) -> Dict[str, Any]:
    return {
        "model": MODEL_ID,
        "messages": [message.model_dump() for message in messages],
        "max_completion_tokens": MAX_COMPLETION_TOKENS,
    }


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _log_call(record: Dict[str, Any]) -> None:
    payload = {"event": "llm_call", **record}
    try:
        _LLM_LOGGER.info(json.dumps(payload, ensure_ascii=False, sort_keys=True))
    except (TypeError, ValueError):
        _LLM_LOGGER.info(
            json.dumps(
                {"event": "llm_call", "error": "serialization_failed", "payload_repr": repr(record)},
                ensure_ascii=False,
            )
        )


def request_completion(api_key: str, messages: Sequence[ChatMessage]) -> str:
    """Send ``messages`` to the chat-completions endpoint and return the answer."""

    payload = build_payload(messages)
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    start = time.perf_counter()
    status_code: Optional[int] = None
    outcome = "error"
    data: Any = None
    try:
        try:
            response = requests.post(
                OPENAI_API_URL,
                json=payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise TransportError(
                f"OpenAI API の呼び出しに失敗しました: {exc}",
                context={"exception": type(exc).__name__, "error": str(exc)},
            ) from exc

        status_code = response.status_code
        raw_text = response.text or ""
        try:
            data = response.json()
        except (ValueError, RecursionError):
            data = None
        if not isinstance(data, dict):
            raise ResponseFormatError(
                "OpenAI API のレスポンスが解析できませんでした。",
                context={
                    "status_code": status_code,
                    "raw_response": raw_text[:_RAW_RESPONSE_PREVIEW_CHARS],
                },
            )

        if status_code >= 400:
            error = data.get("error")
            message = None
            if isinstance(error, Mapping) and isinstance(error.get("message"), str):
                message = error["message"]
            raise ProviderError(
                f"OpenAI API エラー: {message or 'Unexpected error'}",
                status_code=status_code,
                context={
                    "status_code": status_code,
                    "error": error,
                    "raw_response": raw_text[:_RAW_RESPONSE_PREVIEW_CHARS],
                },
            )

        try:
            answer = extract_answer(data)
        except RecursionError as exc:
            raise ResponseFormatError(
                "OpenAI API のレスポンスが深く入れ子になりすぎています。",
                context={
                    "status_code": status_code,
                    "raw_response": raw_text[:_RAW_RESPONSE_PREVIEW_CHARS],
                },
            ) from exc
        if answer is None:
            raise EmptyAnswerError(
                "OpenAI API から有効な回答が得られませんでした。",
                context={"status_code": status_code, "decoded_response": data},
            )

        prompt_log.append_prompt_log(payload, answer, data)
        outcome = "ok"
        return answer
    finally:
        usage = data.get("usage") if isinstance(data, dict) else None
        tokens_in = tokens_out = None
        if isinstance(usage, Mapping):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))
        _log_call(
            {
                "model": payload["model"],
                "messages": len(payload["messages"]),
                "status": outcome,
                "status_code": status_code,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
            }
        )
