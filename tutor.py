import html
import logging
import re
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError

from schemas import ChatMessage, HistoryEntry, Subject, Unit

logger = logging.getLogger(__name__)

# --------- System prompt ---------
SYSTEM_TUTOR_PROMPT = (
    "あなたは小学生・中学生を優しくサポートする家庭教師です。"
    "生徒の理解度に合わせて丁寧に日本語で説明し、必要に応じて例やステップを示してください。"
    "以下は現在取り組んでいる教材情報です。回答の際は必ずこの情報を踏まえてください。"
)
CONTEXT_DELIMITER = "---"

FALLBACK_NOTICE = (
    "（デモ応答）OpenAI API キーが設定されていないため、教材のポイントを元にヒントを表示します。"
)
FALLBACK_SUMMARY_HEADER = "--- 教材のまとめ ---"
FALLBACK_SUMMARY_FOOTER = "----------------------"
FALLBACK_KEY_HINT = "環境変数 OPENAI_API_KEY にキーを設定すると、AI 家庭教師からの回答が有効になります。"

# --------- HTML to plain text ---------
_LIST_ITEM_OPEN = re.compile(r"<li[^>]*>", re.IGNORECASE)
_BLOCK_CLOSE = re.compile(r"</(p|div|li|h[1-6])>", re.IGNORECASE)
_BLOCK_OPEN = re.compile(r"<(p|br|div|h[1-6])[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_NEWLINE_RUN = re.compile(r"\n+")
_WHITESPACE_RUN = re.compile(r"\s+")


def _html_to_text_pass(text: str) -> str:
    text = _LIST_ITEM_OPEN.sub("\n- ", text)
    text = _BLOCK_CLOSE.sub("\n", text)
    text = _BLOCK_OPEN.sub("\n", text)
    text = _ANY_TAG.sub("", text)
    text = html.unescape(text)
    text = _NEWLINE_RUN.sub("\n", text)
    text = _WHITESPACE_RUN.sub(" ", text)
    return text.strip()


def html_to_text(fragment: Optional[str]) -> str:
    """Flatten an explanation HTML fragment into a single line of plain text.

    Decoding entities can surface new markup (``&lt;b&gt;``), so the pass is
    repeated until the text stops changing. This keeps the conversion
    idempotent: feeding its output back in returns the same string.
    """

    text = fragment or ""
    while True:
        converted = _html_to_text_pass(text)
        if converted == text:
            return text
        text = converted


# --------- Context Builder ---------
def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _one_line(value: Optional[str]) -> str:
    return _WHITESPACE_RUN.sub(" ", value or "").strip()


def _exercise_lines(unit: Unit) -> List[str]:
    lines: List[str] = []
    for number, exercise in enumerate(unit.exercises, start=1):
        lines.append(f"Q{number}: {_one_line(exercise.question)}")
        if _present(exercise.hint):
            lines.append(f"Hint: {_one_line(exercise.hint)}")
        if _present(exercise.answer):
            lines.append(f"Answer: {_one_line(exercise.answer)}")
    return lines


def _non_blank_lines(lines: Iterable[str]) -> List[str]:
    return [line.rstrip() for line in lines if line.strip()]


def build_context_text(subject: Subject, unit: Unit) -> str:
    """Summarize a unit as the plain-text briefing sent to the tutor model.

    Field order is fixed: subject, unit, grade, overview, goals, explanation,
    exercises. Empty fields are left out and the result has no blank lines.
    """

    lines = [
        f"Subject: {_one_line(subject.display_name)}",
        f"Unit: {_one_line(unit.display_name)}",
    ]
    if _present(unit.grade):
        lines.append(f"Target grade: {_one_line(unit.grade)}")
    if _present(unit.overview):
        lines.append(f"Overview: {_one_line(unit.overview)}")

    goals = [_one_line(goal) for goal in unit.goals if _present(goal)]
    if goals:
        lines.append("Learning goals: " + "; ".join(goals))

    if unit.explanation:
        explanation = html_to_text(unit.explanation)
        if explanation:
            lines.append(f"Explanation: {explanation}")

    exercise_lines = _exercise_lines(unit)
    if exercise_lines:
        lines.append("Exercises:")
        lines.extend(f" - {line}" for line in exercise_lines)

    return "\n".join(_non_blank_lines(lines)).strip()


# --------- Conversation Assembler ---------
def build_system_prompt(context_text: str) -> str:
    return f"{SYSTEM_TUTOR_PROMPT}\n{CONTEXT_DELIMITER}\n{context_text}\n{CONTEXT_DELIMITER}"


def _history_messages(history: Any) -> List[ChatMessage]:
    if not isinstance(history, list):
        if history not in (None, ""):
            logger.debug("Ignoring non-list chat history of type %s", type(history).__name__)
        return []

    messages: List[ChatMessage] = []
    for entry in history:
        try:
            turn = HistoryEntry.model_validate(entry)
        except ValidationError:
            continue
        messages.append(ChatMessage(role=turn.role, content=turn.content))
    return messages


def build_chat_messages(context_text: str, history: Any, question: str) -> List[ChatMessage]:
    """Assemble the outbound conversation.

    The briefing comes first and the new question last. Client turns keep
    their order; entries that are malformed, blank, or claim a role other than
    ``user``/``assistant`` are dropped.
    """

    messages = [ChatMessage(role="system", content=build_system_prompt(context_text))]
    messages.extend(_history_messages(history))
    messages.append(ChatMessage(role="user", content=question))
    return messages


# --------- Fallback Responder ---------
def build_fallback_answer(subject: Subject, unit: Unit, question: str, context_text: str) -> str:
    """Canned answer used when no OpenAI key is configured."""

    lines = [
        FALLBACK_NOTICE,
        f"学習中: {subject.display_name} / {unit.display_name}",
        f"質問: {question}",
        FALLBACK_SUMMARY_HEADER,
        context_text,
        FALLBACK_SUMMARY_FOOTER,
        FALLBACK_KEY_HINT,
    ]
    return "\n".join(lines)
