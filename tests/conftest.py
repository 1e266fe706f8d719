import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


SAMPLE_CONTENT = {
    "subjects": [
        {
            "id": "math",
            "name": "算数",
            "description": "計算の練習",
            "units": [
                {
                    "id": "fractions",
                    "name": "分数のたし算",
                    "grade": "小学5年",
                    "overview": "通分して計算する",
                    "goals": ["通分できる", "分数をたせる"],
                    "explanation": "<p>分母をそろえます。</p><ul><li>最小公倍数</li><li>分子もかける</li></ul>",
                    "exercises": [
                        {
                            "title": "通分",
                            "question": "1/2 + 1/3 は？",
                            "hint": "6 にそろえる",
                            "answer": "5/6",
                        },
                        {"title": "ひき算", "question": "3/4 - 1/2 は？"},
                    ],
                },
                {"id": "bare", "name": None},
            ],
        },
        {"id": "science", "name": "理科", "units": []},
    ]
}


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("TUTOR_EXPOSE_ERROR_DETAILS", raising=False)
    monkeypatch.setenv("TUTOR_PROMPT_LOG_PATH", str(tmp_path / "logs" / "openai_prompts.log"))


@pytest.fixture
def sample_content():
    return json.loads(json.dumps(SAMPLE_CONTENT))


@pytest.fixture
def content_file(monkeypatch, tmp_path, sample_content):
    path = tmp_path / "contents.json"
    path.write_text(json.dumps(sample_content, ensure_ascii=False), encoding="utf-8")
    monkeypatch.setenv("TUTOR_CONTENT_PATH", str(path))
    return path


@pytest.fixture
def repository(content_file):
    import content

    return content.load_repository()


def _serialize_response(messages):
    status = 500
    headers = {}
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            headers = {
                key.decode("latin-1").lower(): value.decode("latin-1")
                for key, value in message.get("headers", [])
            }
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    return status, headers, body_bytes


def _run_app(
    method: str,
    path: str,
    *,
    payload=None,
    raw_body: Optional[bytes] = None,
    content_type: Optional[str] = "application/json",
):
    import app

    body = raw_body if raw_body is not None else b""
    if payload is not None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    headers = [(b"host", b"testserver"), (b"content-length", str(len(body)).encode())]
    if content_type and body:
        headers.append((b"content-type", content_type.encode()))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body is not None:
            chunk, body = body, None
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    async def _call():
        await app.app(scope, receive, send)
        return _serialize_response(messages)

    return asyncio.run(_call())


class AppResult:
    def __init__(self, status, headers, body_bytes):
        self.status = status
        self.headers = headers
        self.body = body_bytes

    def json(self):
        return json.loads(self.body.decode("utf-8") or "{}")


@pytest.fixture
def run_app():
    def _runner(method, path, **kwargs):
        return AppResult(*_run_app(method, path, **kwargs))

    return _runner
