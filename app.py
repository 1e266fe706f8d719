# app.py — Personal Tutor
# - POST /chat proxies learner questions to OpenAI with the unit as context
# - Demo answers when OPENAI_API_KEY is unset (checked per request)
# - Read-only lesson content API for the static learning room

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Mapping, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import content
import llm
import tutor
from env_validation import get_env_bool, validate_environment
from schemas import ChatAnswer, ChatRequest, ErrorEnvelope, Subject, Unit

logger = logging.getLogger(__name__)

INVALID_REQUEST_MESSAGE = "不正なリクエストです。"
MISSING_FIELDS_MESSAGE = "教科・単元・質問は必須です。"
CONTENT_LOAD_FAILED_MESSAGE = "教材データの読み込みに失敗しました。"
MATERIAL_NOT_FOUND_MESSAGE = "指定された教材が見つかりません。"
SUBJECT_NOT_FOUND_MESSAGE = "指定された教科が見つかりませんでした。"
UNIT_NOT_FOUND_MESSAGE = "指定された単元が見つかりませんでした。"
REPLY_FAILED_MESSAGE = "家庭教師からの返信に失敗しました。"
INTERNAL_ERROR_MESSAGE = "サーバーでエラーが発生しました。"
METHOD_NOT_ALLOWED_MESSAGE = "Method not allowed"

_STATIC_DIR = Path(__file__).resolve().parent / "static"


class TutorJSONResponse(JSONResponse):
    """JSON with an explicit UTF-8 charset; non-ASCII and slashes stay literal."""

    media_type = "application/json; charset=utf-8"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()

        mode = "openai" if llm.configured_api_key() else "fallback"
        logger.info("Tutor chat mode at startup: %s | model: %s", mode, llm.MODEL_ID)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(
    title="Personal Tutor",
    version="1.0.0",
    lifespan=_lifespan,
    default_response_class=TutorJSONResponse,
)
app.mount("/static", StaticFiles(directory=str(_STATIC_DIR)), name="static")


# ---------- Error envelope ----------
def _error_response(
    status_code: int,
    message: str,
    *,
    details: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> TutorJSONResponse:
    body = ErrorEnvelope(error=message, details=details).model_dump(exclude_none=True)
    return TutorJSONResponse(status_code=status_code, content=body, headers=dict(headers or {}))


@app.exception_handler(StarletteHTTPException)
async def _http_error(_: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        message = METHOD_NOT_ALLOWED_MESSAGE
    else:
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(exc.status_code, message, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _invalid_request(_: Request, exc: RequestValidationError):
    logger.info("Rejected malformed request body: %s", exc.errors())
    return _error_response(400, INVALID_REQUEST_MESSAGE)


@app.exception_handler(Exception)
async def _unexpected_error(_: Request, exc: Exception):
    logger.exception("Unhandled error while serving request: %s", exc)
    return _error_response(500, INTERNAL_ERROR_MESSAGE)


# ---------- Helpers ----------
def _expose_error_details() -> bool:
    return get_env_bool("TUTOR_EXPOSE_ERROR_DETAILS", False)


def _load_repository() -> content.ContentRepository:
    try:
        return content.load_repository()
    except content.ContentStoreError as exc:
        logger.error("Content store unavailable: %s", exc)
        raise HTTPException(status_code=500, detail=CONTENT_LOAD_FAILED_MESSAGE) from exc


def _parse_chat_request(payload: Any) -> ChatRequest:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail=INVALID_REQUEST_MESSAGE)
    try:
        body = ChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=INVALID_REQUEST_MESSAGE) from exc
    if body.missing_fields():
        raise HTTPException(status_code=400, detail=MISSING_FIELDS_MESSAGE)
    return body


def _unit_summary(unit: Unit) -> dict[str, Any]:
    return {
        "id": unit.id,
        "name": unit.display_name,
        "grade": unit.grade,
        "overview": unit.overview,
    }


def _subject_summary(subject: Subject) -> dict[str, Any]:
    return {
        "id": subject.id,
        "name": subject.display_name,
        "description": subject.description,
        "units": [_unit_summary(unit) for unit in subject.units],
    }


# ---------- Pages ----------
@app.get("/")
def root():
    return RedirectResponse(url="/static/index.html")


# ---------- Content ----------
@app.get("/api/subjects")
def list_subjects():
    repository = _load_repository()
    return {"subjects": [_subject_summary(subject) for subject in repository.subjects()]}


@app.get("/api/subjects/{subject_id}")
def get_subject(subject_id: str):
    repository = _load_repository()
    subject = repository.find_subject(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail=SUBJECT_NOT_FOUND_MESSAGE)
    return subject.model_dump(exclude={"units"}) | {
        "name": subject.display_name,
        "units": [_unit_summary(unit) for unit in subject.units],
    }


@app.get("/api/subjects/{subject_id}/units/{unit_id}")
def get_unit(subject_id: str, unit_id: str):
    repository = _load_repository()
    subject = repository.find_subject(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail=SUBJECT_NOT_FOUND_MESSAGE)
    unit = repository.find_unit(subject.id, unit_id)
    if unit is None:
        raise HTTPException(status_code=404, detail=UNIT_NOT_FOUND_MESSAGE)
    return {
        "subject": {"id": subject.id, "name": subject.display_name},
        "unit": unit.model_dump() | {"name": unit.display_name},
    }


# ---------- Chat ----------
@app.post("/chat")
@app.post("/chat.php", include_in_schema=False)
def chat(payload: Any = Body(default=None)):
    body = _parse_chat_request(payload)

    repository = _load_repository()
    subject = repository.find_subject(body.subject)
    unit = repository.find_unit(body.subject, body.unit) if subject else None
    if subject is None or unit is None:
        raise HTTPException(status_code=404, detail=MATERIAL_NOT_FOUND_MESSAGE)

    context_text = tutor.build_context_text(subject, unit)
    api_key = llm.configured_api_key()

    if not api_key:
        answer = tutor.build_fallback_answer(subject, unit, body.question, context_text)
        return ChatAnswer(answer=answer, source="fallback").model_dump()

    messages = tutor.build_chat_messages(context_text, body.history, body.question)
    try:
        answer = llm.request_completion(api_key, messages)
    except llm.GatewayError as exc:
        description = exc.describe()
        logger.error("Failed to obtain response from OpenAI.\n%s", description)
        details = description if _expose_error_details() else None
        return _error_response(500, REPLY_FAILED_MESSAGE, details=details)

    return ChatAnswer(answer=answer, source="openai").model_dump()
