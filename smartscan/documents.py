"""Document management: listing, detail, manual correction and deletion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload, sessionmaker

from .access import Actor, Permission, require_document_access, require_permission, scope_filter
from .db import read_session, transaction
from .exceptions import NotFoundError, StoreFailure, ValidationError
from .models import Document, DocumentStatus, Page, Role, User, utcnow
from .pipeline.extract import EntityExtractor
from .search import Pagination
from .storage import BlobStore

logger = logging.getLogger(__name__)

# Written by ingestion; survive manual corrections
INGESTION_FLAGS = ("isPdf", "isWord", "ocrAttempted", "ocrSuccess", "confidence", "pdfPageCount")


@dataclass
class PageView:
    id: str
    page_order: int
    original_name: str
    file_name: str
    file_size: int
    mime_type: str
    is_pdf: bool
    is_word: bool
    ocr_text: str
    extracted_data: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, page: Page) -> "PageView":
        return cls(
            id=page.id,
            page_order=page.page_order,
            original_name=page.original_name,
            file_name=page.file_name,
            file_size=page.file_size,
            mime_type=page.mime_type,
            is_pdf=page.is_pdf,
            is_word=page.is_word,
            ocr_text=page.ocr_text or "",
            extracted_data=dict(page.extracted_data or {}),
            created_at=page.created_at,
            updated_at=page.updated_at,
        )


@dataclass
class DocumentView:
    id: str
    title: str
    description: str
    category: str
    tags: list[str]
    status: DocumentStatus
    owner_id: str
    owner_email: str | None
    created_at: datetime
    updated_at: datetime
    pages: list[PageView] = field(default_factory=list)

    @classmethod
    def from_model(cls, document: Document) -> "DocumentView":
        return cls(
            id=document.id,
            title=document.title,
            description=document.description or "",
            category=document.category,
            tags=list(document.tags or []),
            status=document.status,
            owner_id=document.owner_id,
            owner_email=document.owner.email if document.owner else None,
            created_at=document.created_at,
            updated_at=document.updated_at,
            pages=[PageView.from_model(p) for p in document.pages],
        )


@dataclass
class DocumentList:
    documents: list[DocumentView]
    pagination: Pagination


class DocumentService:
    """Read and modify documents within the actor's permissions.

    Visibility follows the same scope filter as search; a document outside
    the actor's scope is reported as not found.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        extractor: EntityExtractor | None = None,
        default_limit: int = 20,
        max_limit: int = 100,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.extractor = extractor or EntityExtractor()
        self.default_limit = default_limit
        self.max_limit = max_limit

    def list_documents(
        self,
        actor: Actor,
        page: int = 1,
        limit: int | None = None,
        status: DocumentStatus | str | None = None,
        category: str | None = None,
        search: str | None = None,
    ) -> DocumentList:
        limit = self.default_limit if limit is None else limit
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be >= 1")
        limit = min(limit, self.max_limit)

        filters = [scope_filter(actor)]
        if status:
            try:
                filters.append(Document.status == DocumentStatus(status))
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status!r}") from e
        if category:
            filters.append(Document.category == category)
        if search and search.strip():
            term = search.strip()
            filters.append(or_(
                Document.title.icontains(term, autoescape=True),
                Document.description.icontains(term, autoescape=True),
            ))

        with read_session(self.session_factory) as session:
            total = session.scalar(select(func.count()).select_from(Document).where(*filters)) or 0
            documents = session.scalars(
                select(Document)
                .options(selectinload(Document.pages), selectinload(Document.owner))
                .where(*filters)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            views = [DocumentView.from_model(d) for d in documents]

        return DocumentList(documents=views, pagination=Pagination.build(page, limit, total))

    def get_document(self, actor: Actor, document_id: str) -> DocumentView:
        with read_session(self.session_factory) as session:
            document = session.get(Document, document_id)
            require_document_access(actor, document, "view")
            return DocumentView.from_model(document)

    def update_document(
        self,
        actor: Actor,
        document_id: str,
        title: str | None = None,
        description: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
    ) -> DocumentView:
        """Edit document metadata. Status is owned by ingestion and never changes here."""
        if title is not None and not title.strip():
            raise ValidationError("Title must not be empty")
        if tags is not None and not all(isinstance(t, str) for t in tags):
            raise ValidationError("Tags must be strings")

        with transaction(self.session_factory) as session:
            document = require_document_access(actor, session.get(Document, document_id), "edit")

            if title is not None:
                document.title = title.strip()
            if description is not None:
                document.description = description
            if category is not None:
                document.category = category.strip() or document.category
            if tags is not None:
                document.tags = [t.strip() for t in tags if t.strip()]
            document.updated_at = utcnow()

            session.flush()
            view = DocumentView.from_model(document)

        logger.info("Document %s updated by %s", document_id, actor.id)
        return view

    def update_page(
        self,
        actor: Actor,
        document_id: str,
        page_id: str,
        ocr_text: str | None = None,
        extracted_data: dict[str, Any] | None = None,
    ) -> PageView:
        """Manually correct a page's recognized text or entities.

        New text without explicit entities re-runs extraction. Ingestion
        flags are kept either way unless explicitly replaced.
        """
        with transaction(self.session_factory) as session:
            require_document_access(actor, session.get(Document, document_id), "edit")
            page = session.get(Page, page_id)
            if page is None or page.document_id != document_id:
                raise NotFoundError("Page not found")

            previous = dict(page.extracted_data or {})
            flags = {k: previous[k] for k in INGESTION_FLAGS if k in previous}

            if ocr_text is not None:
                page.ocr_text = ocr_text
            if extracted_data is not None:
                page.extracted_data = {**flags, **extracted_data}
            elif ocr_text is not None:
                page.extracted_data = {**self.extractor.extract(ocr_text).to_dict(), **flags}
            page.updated_at = utcnow()

            session.flush()
            view = PageView.from_model(page)

        logger.info("Page %s of document %s corrected by %s", page_id, document_id, actor.id)
        return view

    def delete_document(self, actor: Actor, document_id: str) -> None:
        """Delete a document with its pages, then their stored files.

        Rows go first in one transaction. A stored file that cannot be
        removed afterwards is logged and left for reconciliation.
        """
        with transaction(self.session_factory) as session:
            document = require_document_access(actor, session.get(Document, document_id), "delete")
            paths = [p.file_path for p in document.pages]
            session.delete(document)

        logger.info("Document %s deleted by %s (%d page(s))", document_id, actor.id, len(paths))

        for path in paths:
            try:
                self.blob_store.delete(path)
            except StoreFailure as e:
                logger.error("Blob %s of deleted document %s not removed: %s", path, document_id, e)

    def stats(self, actor: Actor) -> dict[str, Any]:
        """Counts for the admin overview."""
        require_permission(actor, Permission.STATS_VIEW)

        with read_session(self.session_factory) as session:
            by_status = dict(session.execute(
                select(Document.status, func.count()).group_by(Document.status)
            ).all())
            by_role = dict(session.execute(select(User.role, func.count()).group_by(User.role)).all())

            return {
                "users": session.scalar(select(func.count()).select_from(User)) or 0,
                "documents": session.scalar(select(func.count()).select_from(Document)) or 0,
                "pages": session.scalar(select(func.count()).select_from(Page)) or 0,
                "documents_by_status": {s.value: by_status.get(s, 0) for s in DocumentStatus},
                "users_by_role": {r.value: by_role.get(r, 0) for r in Role},
            }
