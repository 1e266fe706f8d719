"""Pydantic schemas for lesson content, chat requests and chat results."""

from __future__ import annotations

from typing import Any, List, Literal

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "Exercise",
    "Unit",
    "Subject",
    "ContentLibrary",
    "ChatMessage",
    "HistoryEntry",
    "ChatRequest",
    "ChatAnswer",
    "ErrorEnvelope",
]


def _scalar_to_text(value: Any) -> Any:
    """Coerce JSON scalars to ``str`` so numeric ids and grades load as text."""

    if value is None:
        return value
    if isinstance(value, bool):
        raise ValueError("boolean values are not accepted as text")
    if isinstance(value, (int, float)):
        return str(value)
    return value


class Exercise(BaseModel):
    title: str | None = None
    question: str = Field(default="", description="Primary content of the exercise.")
    hint: str | None = None
    answer: str | None = None

    model_config = {"extra": "allow"}

    @field_validator("title", "question", "hint", "answer", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return _scalar_to_text(value)


class Unit(BaseModel):
    id: str
    name: str | None = None
    grade: str | None = None
    overview: str | None = None
    goals: List[str] = Field(default_factory=list)
    explanation: str | None = Field(
        default=None,
        description="HTML fragment rendered on the lesson page.",
    )
    exercises: List[Exercise] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("id", "name", "grade", "overview", "explanation", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return _scalar_to_text(value)

    @field_validator("goals", mode="before")
    @classmethod
    def _coerce_goals(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [_scalar_to_text(goal) for goal in value]
        return value

    @field_validator("exercises", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Subject(BaseModel):
    id: str
    name: str | None = None
    description: str | None = None
    units: List[Unit] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("id", "name", "description", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return _scalar_to_text(value)

    @field_validator("units", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ContentLibrary(BaseModel):
    subjects: List[Subject]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class HistoryEntry(BaseModel):
    """One prior turn supplied by the client.

    Only learner and tutor turns are accepted; a client-supplied ``system``
    turn fails validation and is dropped by the caller.
    """

    role: Literal["user", "assistant"]
    content: str = Field(min_length=1)

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, value: Any) -> Any:
        value = _scalar_to_text(value)
        return value.strip() if isinstance(value, str) else value


class ChatRequest(BaseModel):
    subject: str = ""
    unit: str = ""
    question: str = ""
    history: Any = Field(default_factory=list)

    @field_validator("subject", "unit", "question", mode="before")
    @classmethod
    def _coerce_and_strip(cls, value: Any) -> Any:
        if value is None:
            return ""
        value = _scalar_to_text(value)
        return value.strip() if isinstance(value, str) else value

    def missing_fields(self) -> list[str]:
        return [name for name in ("subject", "unit", "question") if not getattr(self, name)]


class ChatAnswer(BaseModel):
    answer: str
    source: Literal["openai", "fallback"]


class ErrorEnvelope(BaseModel):
    error: str
    details: str | None = None
