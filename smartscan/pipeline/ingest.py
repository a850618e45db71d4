"""Document ingestion: one upload batch becomes one Document with N Pages."""

from __future__ import annotations

import asyncio
import enum
import io
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Sequence

from sqlalchemy.orm import sessionmaker

from ..access import Actor, Permission, require_permission
from ..db import transaction
from ..exceptions import NotFoundError, OCRFailure, StoreFailure, ValidationError
from ..models import Document, DocumentStatus, Page, utcnow
from ..storage import BlobStore
from .extract import EntityExtractor
from .ocr import OCREngine

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tiff", ".tif", ".bmp", ".webp")
PDF_EXTENSIONS = (".pdf",)
WORD_EXTENSIONS = (".doc", ".docx", ".txt", ".rtf", ".odt")

_WORD_MIME_HINTS = ("msword", "officedocument", "text/plain", "rtf", "opendocument.text")

DEFAULT_CATEGORY = "general"

PageProgress = Callable[[int, int], None]  # (page_order, percent)


class FileKind(str, enum.Enum):
    IMAGE = "image"
    PDF = "pdf"
    WORD = "word"


def classify(filename: str, mime_type: str | None = None) -> FileKind:
    """Classify an upload by extension, falling back to its media type."""
    ext = Path(filename).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return FileKind.IMAGE
    if ext in PDF_EXTENSIONS:
        return FileKind.PDF
    if ext in WORD_EXTENSIONS:
        return FileKind.WORD

    mime_type = (mime_type or "").lower()
    if mime_type.startswith("image/"):
        return FileKind.IMAGE
    if "pdf" in mime_type:
        return FileKind.PDF
    if any(hint in mime_type for hint in _WORD_MIME_HINTS):
        return FileKind.WORD

    raise ValidationError(
        f"Unsupported file type: {filename}. Accepted: "
        + ", ".join(ext.lstrip(".").upper() for ext in IMAGE_EXTENSIONS + PDF_EXTENSIONS + WORD_EXTENSIONS)
    )


def default_title(today: date | None = None) -> str:
    return f"Document of {(today or date.today()).strftime('%d.%m.%Y')}"


@dataclass
class IncomingFile:
    """One file of an upload request."""

    filename: str
    content: bytes
    mime_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def resolved_mime_type(self) -> str:
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.filename)
        return guessed or "application/octet-stream"


@dataclass
class PageOutcome:
    """Per-file summary returned to the uploader."""

    page_order: int
    file_name: str
    is_pdf: bool
    is_word: bool
    ocr_attempted: bool
    ocr_success: bool
    confidence: float = 0.0
    error: str | None = None


@dataclass
class IngestResult:
    """Result of document ingestion."""

    document_id: str
    status: DocumentStatus
    pages: list[PageOutcome] = field(default_factory=list)

    @property
    def pages_processed(self) -> int:
        return len(self.pages)

    @property
    def has_pdf(self) -> bool:
        return any(p.is_pdf for p in self.pages)

    @property
    def has_word(self) -> bool:
        return any(p.is_word for p in self.pages)


@dataclass
class _ProcessedPage:
    index: int
    file: IncomingFile
    kind: FileKind
    storage_path: str
    ocr_text: str
    extracted_data: dict[str, Any]
    outcome: PageOutcome


class DocumentIngester:
    """Turn an upload batch into a Document and its Pages.

    Only images go through OCR. PDFs and word-like files are stored with
    empty text and flagged as skipped. A failed recognition leaves its page
    with empty text and never aborts the batch. Pages are written together
    with the ``processing -> ready`` transition in a single transaction, so
    readers never see a ready document with missing pages.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        ocr_engine: OCREngine,
        extractor: EntityExtractor | None = None,
        max_file_size: int = 100 * 1024 * 1024,
        max_files: int = 20,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.ocr_engine = ocr_engine
        self.extractor = extractor or EntityExtractor()
        self.max_file_size = max_file_size
        self.max_files = max_files

    async def ingest(
        self,
        actor: Actor,
        files: Sequence[IncomingFile],
        title: str | None = None,
        description: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        on_progress: PageProgress | None = None,
    ) -> IngestResult:
        """Ingest one upload batch owned by ``actor``."""
        require_permission(actor, Permission.DOCUMENTS_CREATE)
        kinds = self._validate(files)

        document_id = self._create_document(actor, title, description, category, tags)
        logger.info("Document %s created for %d file(s)", document_id, len(files))

        stored: list[str] = []
        try:
            for incoming in files:
                stored.append(await asyncio.to_thread(
                    self.blob_store.put, incoming.content, Path(incoming.filename).suffix
                ))

            processed = await asyncio.gather(*(
                self._process_file(i, incoming, kinds[i], stored[i], on_progress)
                for i, incoming in enumerate(files)
            ))
            # gather keeps argument order; sort anyway so order never depends on completion
            processed = sorted(processed, key=lambda p: p.index)

            self._finalize(document_id, processed)
        except NotFoundError:
            self._discard_blobs(stored)
            raise
        except Exception as e:
            logger.error("Ingestion of document %s failed: %s", document_id, e)
            self._discard_blobs(stored)
            self._remove_document(document_id)
            if isinstance(e, StoreFailure):
                raise
            raise StoreFailure(f"Ingestion of document {document_id} failed: {e}") from e

        logger.info("Document %s ready with %d page(s)", document_id, len(processed))
        return IngestResult(
            document_id=document_id,
            status=DocumentStatus.READY,
            pages=[p.outcome for p in processed],
        )

    def _validate(self, files: Sequence[IncomingFile]) -> list[FileKind]:
        if not files:
            raise ValidationError("No files uploaded")
        if len(files) > self.max_files:
            raise ValidationError(f"Too many files: {len(files)} (max {self.max_files})")

        kinds = []
        for incoming in files:
            if not incoming.filename:
                raise ValidationError("File without a name")
            if incoming.size > self.max_file_size:
                raise ValidationError(
                    f"File too large: {incoming.filename} ({incoming.size} bytes, max {self.max_file_size})"
                )
            kinds.append(classify(incoming.filename, incoming.mime_type))
        return kinds

    def _create_document(
        self,
        actor: Actor,
        title: str | None,
        description: str | None,
        category: str | None,
        tags: list[str] | None,
    ) -> str:
        with transaction(self.session_factory) as session:
            document = Document(
                owner_id=actor.id,
                title=(title or "").strip() or default_title(),
                description=description or "",
                category=(category or "").strip() or DEFAULT_CATEGORY,
                tags=list(tags or []),
                status=DocumentStatus.PROCESSING,
            )
            session.add(document)
            session.flush()
            return document.id

    async def _process_file(
        self,
        index: int,
        incoming: IncomingFile,
        kind: FileKind,
        storage_path: str,
        on_progress: PageProgress | None,
    ) -> _ProcessedPage:
        page_order = index + 1
        is_pdf = kind is FileKind.PDF
        is_word = kind is FileKind.WORD
        ocr_attempted = kind is FileKind.IMAGE

        text = ""
        confidence = 0.0
        error = None
        entities: dict[str, Any] = {}
        extra: dict[str, Any] = {}

        if ocr_attempted:
            def report(percent: int) -> None:
                logger.debug("OCR page %d (%s): %d%%", page_order, incoming.filename, percent)
                if on_progress:
                    on_progress(page_order, percent)

            try:
                result = await self.ocr_engine.recognize(storage_path, report)
                text = result.text or ""
                confidence = result.confidence
                entities = self.extractor.extract(text).to_dict()
            except OCRFailure as e:
                error = e.reason
                logger.warning("OCR failed for %s: %s", incoming.filename, e.reason)
            except Exception as e:
                # Any adapter error costs one page, never the batch
                text, confidence, entities = "", 0.0, {}
                error = f"{type(e).__name__}: {e}"
                logger.exception("OCR crashed for %s", incoming.filename)
        else:
            logger.info("OCR skipped for %s (%s)", incoming.filename, kind.value)
            if is_pdf:
                extra["pdfPageCount"] = await asyncio.to_thread(_pdf_page_count, incoming.content)

        ocr_success = ocr_attempted and error is None
        extracted_data = {
            **entities,
            **extra,
            "isPdf": is_pdf,
            "isWord": is_word,
            "ocrAttempted": ocr_attempted,
            "ocrSuccess": ocr_success,
        }
        if ocr_attempted:
            extracted_data["confidence"] = confidence

        return _ProcessedPage(
            index=index,
            file=incoming,
            kind=kind,
            storage_path=storage_path,
            ocr_text=text,
            extracted_data=extracted_data,
            outcome=PageOutcome(
                page_order=page_order,
                file_name=incoming.filename,
                is_pdf=is_pdf,
                is_word=is_word,
                ocr_attempted=ocr_attempted,
                ocr_success=ocr_success,
                confidence=confidence,
                error=error,
            ),
        )

    def _finalize(self, document_id: str, processed: list[_ProcessedPage]) -> None:
        """Write all pages and flip the status in one transaction."""
        with transaction(self.session_factory) as session:
            document = session.get(Document, document_id)
            if document is None:
                logger.info("Document %s was deleted during ingestion; results discarded", document_id)
                raise NotFoundError(f"Document {document_id} was deleted during ingestion")

            for item in processed:
                session.add(Page(
                    document_id=document_id,
                    original_name=item.file.filename,
                    file_name=Path(item.storage_path).name,
                    file_path=item.storage_path,
                    file_size=item.file.size,
                    mime_type=item.file.resolved_mime_type,
                    page_order=item.index + 1,
                    ocr_text=item.ocr_text,
                    extracted_data=item.extracted_data,
                ))

            document.status = DocumentStatus.READY
            document.updated_at = utcnow()

    def _remove_document(self, document_id: str) -> None:
        try:
            with transaction(self.session_factory) as session:
                document = session.get(Document, document_id)
                if document is not None:
                    session.delete(document)
        except StoreFailure as e:
            # Left in "processing"; the caller still gets the original error
            logger.error("Could not remove partial document %s: %s", document_id, e)

    def _discard_blobs(self, paths: list[str]) -> None:
        for path in paths:
            try:
                self.blob_store.delete(path)
            except StoreFailure as e:
                logger.error("Orphaned blob %s: %s", path, e)


def _pdf_page_count(content: bytes) -> int:
    """Get the number of pages in a PDF, 0 when it cannot be parsed."""
    from pypdf import PdfReader

    try:
        return len(PdfReader(io.BytesIO(content)).pages)
    except Exception as e:
        logger.debug("Could not count PDF pages: %s", e)
        return 0
