"""Best-effort append-only log of prompts sent to the tutor model."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    import fcntl
except ImportError:  # Windows has no advisory flock
    fcntl = None

logger = logging.getLogger(__name__)

_DEFAULT_LOG_PATH = Path(__file__).resolve().parent / "data" / "logs" / "openai_prompts.log"
_WRITE_LOCK = threading.Lock()


def prompt_log_path() -> Path:
    return Path(os.getenv("TUTOR_PROMPT_LOG_PATH") or _DEFAULT_LOG_PATH)


def _ensure_directory(directory: Path) -> None:
    # exist_ok covers a concurrent request creating it first.
    directory.mkdir(parents=True, exist_ok=True)


def _logged_messages(messages: Any) -> List[Dict[str, str]]:
    if not isinstance(messages, list):
        return []
    logged: List[Dict[str, str]] = []
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        logged.append(
            {
                "role": str(message.get("role") or ""),
                "content": str(message.get("content") or ""),
            }
        )
    return logged


def build_log_entry(
    payload: Mapping[str, Any],
    answer: str,
    response: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    moment = now or datetime.now().astimezone()
    entry: Dict[str, Any] = {
        "timestamp": moment.isoformat(timespec="seconds"),
        "request": {
            "model": payload.get("model"),
            "max_completion_tokens": payload.get("max_completion_tokens"),
            "messages": _logged_messages(payload.get("messages")),
        },
        "response": {"answer": answer},
    }
    if "id" in response:
        entry["response"]["id"] = response["id"]
    if "usage" in response:
        entry["response"]["usage"] = response["usage"]
    return entry


def append_prompt_log(
    payload: Mapping[str, Any],
    answer: str,
    response: Mapping[str, Any],
    *,
    path: Path | str | None = None,
) -> bool:
    """Append one JSON line describing a completed tutor call.

    Returns ``False`` when the record could not be written. Failures never
    propagate to the caller.
    """

    target = Path(path) if path else prompt_log_path()
    try:
        line = json.dumps(build_log_entry(payload, answer, response), ensure_ascii=False)
        _ensure_directory(target.parent)
        with _WRITE_LOCK, target.open("a", encoding="utf-8") as handle:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.write(line + "\n")
                handle.flush()
            finally:
                if fcntl is not None:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except Exception as exc:
        logger.debug("Prompt log write to %s skipped: %s", target, exc)
        return False
    return True
