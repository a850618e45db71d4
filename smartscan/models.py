"""Domain models for SmartScan.

Core entities:
- User: Someone who uploads and searches documents, with a role
- Document: A logical document assembled from one upload batch
- Page: One uploaded file of a document, with OCR text and extracted entities
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid4())


# === Enums ===


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"
    GUEST = "guest"


class DocumentStatus(str, enum.Enum):
    PROCESSING = "processing"
    READY = "ready"


# === Core Models ===


class User(Base):
    """A user of the system."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))  # opaque credential
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(Enum(Role), default=Role.USER)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    documents: Mapped[list["Document"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan", passive_deletes=True
    )


class Document(Base):
    """A document assembled from the files of one upload batch."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(100), default="general", index=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)

    # processing -> ready, set only by the ingestion pipeline
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus), default=DocumentStatus.PROCESSING, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner: Mapped["User"] = relationship(back_populates="documents")
    pages: Mapped[list["Page"]] = relationship(
        back_populates="document",
        order_by="Page.page_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Page(Base):
    """One stored file of a document."""

    __tablename__ = "document_pages"
    __table_args__ = (UniqueConstraint("document_id", "page_order", name="uq_page_order"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    document_id: Mapped[str] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )

    # File info
    original_name: Mapped[str] = mapped_column(String(255))
    file_name: Mapped[str] = mapped_column(String(255))  # name inside the blob store
    file_path: Mapped[str] = mapped_column(String(1000))
    file_size: Mapped[int] = mapped_column(Integer)
    mime_type: Mapped[str] = mapped_column(String(100))
    page_order: Mapped[int] = mapped_column(Integer)  # 1-based upload order

    # Recognition output (editable for manual correction)
    ocr_text: Mapped[str] = mapped_column(Text, default="")
    extracted_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    document: Mapped["Document"] = relationship(back_populates="pages")

    @property
    def is_pdf(self) -> bool:
        return "pdf" in (self.mime_type or "") or self.original_name.lower().endswith(".pdf")

    @property
    def is_word(self) -> bool:
        from .pipeline.ingest import WORD_EXTENSIONS

        return any(self.original_name.lower().endswith(ext) for ext in WORD_EXTENSIONS)
