from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]

os.environ["ENVIRONMENT"] = "test"
os.environ["RADAR_CONFIG_DIR"] = str(ROOT / "config")
os.environ.setdefault("STORAGE_PROVIDER", "local")

from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from radar.database import Base  # noqa: E402
import radar.models  # noqa: E402,F401
from radar.models import Item, Source  # noqa: E402
from radar.services.llm_service import InferenceConnectionError  # noqa: E402
from radar.services.source_config import SourceCursor  # noqa: E402
from radar.text_utils import content_hash  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


class FakeLLMService:
    """Answers generate_json per purpose from queued dicts, callables or exceptions."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[tuple] = []

    def set(self, purpose: str, response: Any) -> None:
        self.responses[purpose] = response

    def count(self, purpose: Optional[str] = None) -> int:
        return len([call for call in self.calls if purpose is None or call[0] == purpose])

    def generate_json(self, prompt: str, options) -> Dict[str, Any]:
        self.calls.append((options.purpose, prompt))
        response = self.responses.get(options.purpose)
        if response is None:
            raise InferenceConnectionError(f"no fake response for {options.purpose}", "refused")

        if isinstance(response, list):
            if not response:
                raise InferenceConnectionError(f"fake responses for {options.purpose} exhausted", "refused")
            response = response.pop(0)
        if callable(response) and not isinstance(response, type):
            response = response(prompt)
        if isinstance(response, Exception):
            raise response
        return dict(response)

    def generate_text(self, prompt: str, options) -> str:
        raise NotImplementedError

    def check_connection(self) -> bool:
        return True


class FakeStorage:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads: List[tuple] = []

    def upload_media(self, item_id: int, data: bytes, extension: str, content_type: str, index: int = 0) -> str:
        if self.fail:
            raise OSError("bucket unavailable")
        self.uploads.append((item_id, data, extension, content_type))
        return f"http://media.test/media/{item_id}/{item_id}_{index}.{extension}"


class FakeFetcher:
    """Returns prepared batches and advances the cursor to the highest external id."""

    def __init__(self, batches: List[list]):
        self.batches = list(batches)
        self.cursors: List[SourceCursor] = []

    def fetch(self, config, cursor: SourceCursor):
        self.cursors.append(cursor)
        return self.batches.pop(0) if self.batches else []

    @staticmethod
    def advance_cursor(cursor: SourceCursor, items):
        ids = [int(item.external_id) for item in items]
        if cursor.last_message_id:
            ids.append(cursor.last_message_id)
        return SourceCursor(last_message_id=max(ids) if ids else None)


@pytest.fixture
def fake_llm() -> FakeLLMService:
    return FakeLLMService()


def make_source(db, name: str = "Channel A", source_type: str = "telegram", config: Optional[dict] = None) -> Source:
    source = Source(
        name=name,
        source_type=source_type,
        config=config if config is not None else {"telegram": {"username": name.lower().replace(" ", "_")}},
        cursor={},
    )
    db.add(source)
    db.commit()
    return source


def make_item(db, title: str, content: str = "", source: Optional[Source] = None, **fields) -> Item:
    item = Item(
        source_id=source.id if source else None,
        title=title,
        content=content,
        content_hash=content_hash(f"{title}\n{content}\n{fields.get('url', '')}"),
        **fields,
    )
    db.add(item)
    db.commit()
    return item


def same_story(confidence: float = 0.9) -> Callable[[str], dict]:
    return lambda prompt: {"same_story": True, "confidence": confidence, "difference": 10, "reasoning": "same event"}


def different_story(confidence: float = 0.9) -> Callable[[str], dict]:
    return lambda prompt: {"same_story": False, "confidence": confidence, "difference": 90, "reasoning": "different"}


def bilingual(title: str = "Flood hits Phnom Penh", content: str = "Heavy rain flooded streets.",
              kh: bool = True) -> dict:
    data = {"title_en": title, "content_en": content}
    if kh:
        data.update({"title_kh": "ទឹកជំនន់", "content_kh": "ភ្លៀងធ្លាក់ខ្លាំង"})
    return data
