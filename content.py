"""Read-only lesson content store backed by a static JSON file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from schemas import ContentLibrary, Subject, Unit

logger = logging.getLogger(__name__)

_DEFAULT_CONTENT_PATH = Path(__file__).resolve().parent / "data" / "contents.json"


class ContentStoreError(RuntimeError):
    """Raised when the content file is missing, unreadable or malformed."""


def content_path() -> Path:
    return Path(os.getenv("TUTOR_CONTENT_PATH") or _DEFAULT_CONTENT_PATH)


def _load_json(path: Path) -> object:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


class ContentRepository:
    """Lookup of subjects and units by id."""

    def __init__(self, json_path: Path | str):
        path = Path(json_path)
        if not path.is_file():
            raise ContentStoreError(f"コンテンツファイルが見つかりません: {path}")

        try:
            payload = _load_json(path)
        except OSError as exc:
            raise ContentStoreError("コンテンツファイルを読み込めませんでした。") from exc
        except ValueError as exc:
            raise ContentStoreError("コンテンツデータの形式が正しくありません。") from exc

        try:
            self._library = ContentLibrary.model_validate(payload)
        except ValidationError as exc:
            raise ContentStoreError("コンテンツデータの形式が正しくありません。") from exc
        self.path = path

    def subjects(self) -> List[Subject]:
        return list(self._library.subjects)

    def find_subject(self, subject_id: str) -> Optional[Subject]:
        for subject in self._library.subjects:
            if subject.id == subject_id:
                return subject
        return None

    def units(self, subject_id: str) -> List[Unit]:
        subject = self.find_subject(subject_id)
        if subject is None:
            return []
        return list(subject.units)

    def find_unit(self, subject_id: str, unit_id: str) -> Optional[Unit]:
        for unit in self.units(subject_id):
            if unit.id == unit_id:
                return unit
        return None


def load_repository(path: Path | str | None = None) -> ContentRepository:
    """Read the content file from disk; called once per request."""

    target = Path(path) if path else content_path()
    repository = ContentRepository(target)
    logger.debug("Loaded %d subjects from %s", len(repository.subjects()), target)
    return repository
