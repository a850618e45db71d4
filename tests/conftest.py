"""Shared test fixtures for the SmartScan test suite."""

import asyncio
import struct
import zlib
from datetime import datetime
from pathlib import Path

import pytest

from smartscan.access import Actor
from smartscan.db import get_engine, get_session_factory, init_db, transaction
from smartscan.exceptions import OCRFailure
from smartscan.models import Document, Role, User
from smartscan.pipeline import DocumentIngester, IncomingFile, OCRResult
from smartscan.storage import BlobStore


class FakeOCREngine:
    """Stands in for Tesseract: the "image" bytes are the recognized text.

    Files whose text starts with ``FAIL`` raise ``OCRFailure``; ``delays``
    maps a text to seconds to wait before answering.
    """

    def __init__(self, delays: dict[str, float] | None = None):
        self.delays = delays or {}
        self.calls: list[str] = []
        self.completed: list[str] = []

    async def recognize(self, image_path, on_progress=None) -> OCRResult:
        text = Path(image_path).read_bytes().decode("utf-8")
        self.calls.append(text)
        if on_progress:
            on_progress(0)
        await asyncio.sleep(self.delays.get(text, 0))
        if text.startswith("FAIL"):
            raise OCRFailure("unreadable image")
        self.completed.append(text)
        if on_progress:
            on_progress(100)
        return OCRResult(text=text, confidence=0.9, words=[])


def _create_user(session_factory, email: str, role: Role) -> Actor:
    with transaction(session_factory) as session:
        user = User(email=email, password_hash="!", name=email.split("@")[0], role=role)
        session.add(user)
        session.flush()
        return Actor(id=user.id, role=role)


@pytest.fixture
def engine():
    """In-memory database shared by every session of one test."""
    engine = get_engine("sqlite://")
    init_db(engine, seed=False)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def admin(session_factory) -> Actor:
    return _create_user(session_factory, "root@example.com", Role.ADMIN)


@pytest.fixture
def manager(session_factory) -> Actor:
    return _create_user(session_factory, "manager@example.com", Role.MANAGER)


@pytest.fixture
def alice(session_factory) -> Actor:
    return _create_user(session_factory, "alice@example.com", Role.USER)


@pytest.fixture
def bob(session_factory) -> Actor:
    return _create_user(session_factory, "bob@example.com", Role.USER)


@pytest.fixture
def guest(session_factory) -> Actor:
    return _create_user(session_factory, "guest@example.com", Role.GUEST)


@pytest.fixture
def blob_store(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "uploads")


@pytest.fixture
def ocr_engine() -> FakeOCREngine:
    return FakeOCREngine()


@pytest.fixture
def ingester(session_factory, blob_store, ocr_engine) -> DocumentIngester:
    return DocumentIngester(session_factory, blob_store, ocr_engine)


@pytest.fixture
def make_document(ingester, session_factory):
    """Ingest one image page per text and return the document id.

    ``created_at`` can be pinned so ordering and date filters are predictable.
    """

    def _make(actor: Actor, *texts: str, created_at: datetime | None = None, **kwargs) -> str:
        files = [
            IncomingFile(filename=f"page{i + 1}.png", content=text.encode("utf-8"))
            for i, text in enumerate(texts)
        ]
        document_id = asyncio.run(ingester.ingest(actor, files, **kwargs)).document_id
        if created_at is not None:
            with transaction(session_factory) as session:
                session.get(Document, document_id).created_at = created_at
        return document_id

    return _make


@pytest.fixture
def oversized_png() -> bytes:
    """A valid PNG header declaring 20000x20000 pixels.

    Pillow refuses to open it as a decompression bomb.
    """

    def chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    header = struct.pack(">IIBBBBB", 20000, 20000, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(b"\x00"))
        + chunk(b"IEND", b"")
    )
