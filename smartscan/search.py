"""Role-scoped search over documents and recognized page text.

Every query starts from the actor's scope filter, so a non-elevated user
only ever sees their own documents whatever other filters are combined.
Results are grouped per document, newest first, and the total is counted
with exactly the same predicate as the result page.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from .access import Actor, scope_filter
from .config import SearchConfig
from .db import read_session
from .exceptions import ValidationError
from .models import Document, DocumentStatus, Page

logger = logging.getLogger(__name__)


class SearchType(str, enum.Enum):
    ALL = "all"
    DOCUMENT = "document"
    CONTENT = "content"


ENTITY_FIELDS = {
    "date": "dates",
    "amount": "amounts",
    "email": "emails",
    "phone": "phones",
    "keyword": "keywords",
}


@dataclass
class SearchQuery:
    """Filters of a search request. All given filters must hold."""

    q: str | None = None
    type: SearchType = SearchType.ALL
    category: str | None = None
    date_from: date | datetime | str | None = None
    date_to: date | datetime | str | None = None
    has_date: bool = False
    has_amount: bool = False
    page: int = 1
    limit: int | None = None

    def has_criteria(self) -> bool:
        return bool(
            (self.q and self.q.strip())
            or self.category
            or self.date_from
            or self.date_to
            or self.has_date
            or self.has_amount
        )


@dataclass
class Pagination:
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


@dataclass
class PageMatch:
    """A page that matched, so the client can jump straight to it."""

    id: str
    page_order: int
    highlights: list[str] = field(default_factory=list)
    matched_data: dict[str, Any] | None = None


@dataclass
class SearchHit:
    id: str
    title: str
    description: str
    category: str
    tags: list[str]
    status: DocumentStatus
    owner_id: str
    created_at: datetime
    updated_at: datetime
    matched_pages: list[PageMatch] = field(default_factory=list)
    total_pages: int = 0


@dataclass
class SearchResponse:
    results: list[SearchHit]
    pagination: Pagination
    query: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class Suggestion:
    value: str
    type: str  # document, tag or content


def highlight(text: str | None, q: str | None, window: int = 50) -> str | None:
    """Snippet around the first case-insensitive occurrence of ``q``.

    Up to ``window`` characters are kept on each side, clipped at the text
    boundaries. Returns None when there is no match.
    """
    if not text or not q:
        return None
    index = text.lower().find(q.lower())
    if index < 0:
        return None
    start = max(0, index - window)
    end = min(len(text), index + len(q) + window)
    return text[start:end]


def _as_datetime(value: date | datetime | str | None, end_of_day: bool = False) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value) if "T" in value or " " in value else date.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}") from e
    if isinstance(value, datetime):
        # created_at is stored as naive UTC
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)
    return datetime.combine(value, time.max if end_of_day else time.min)


def _tag_contains(q: str) -> ColumnElement[bool]:
    """True when any single tag of the document contains ``q``."""
    tags = func.json_each(Document.tags).table_valued("value")
    return select(1).select_from(tags).where(tags.c.value.icontains(q, autoescape=True)).exists()


class SearchEngine:
    """Full-text and field search, plus autocomplete suggestions."""

    def __init__(self, session_factory: sessionmaker, config: SearchConfig | None = None):
        self.session_factory = session_factory
        self.config = config or SearchConfig()

    # === Full-text search ===

    def search(self, actor: Actor, query: SearchQuery) -> SearchResponse:
        if not query.has_criteria():
            raise ValidationError("At least one search parameter is required")

        search_type = self._search_type(query.type)
        page, limit = self._paging(query.page, query.limit)
        q = query.q.strip() if query.q and query.q.strip() else None
        filters = self._filters(actor, query, search_type, q)

        with read_session(self.session_factory) as session:
            total = session.scalar(select(func.count()).select_from(Document).where(*filters)) or 0
            documents = session.scalars(
                select(Document)
                .where(*filters)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

            pages_by_doc: dict[str, list[tuple[str, int, str]]] = {d.id: [] for d in documents}
            if documents:
                rows = session.execute(
                    select(Page.id, Page.document_id, Page.page_order, Page.ocr_text)
                    .where(Page.document_id.in_(list(pages_by_doc)))
                    .order_by(Page.document_id, Page.page_order)
                ).all()
                for page_id, document_id, page_order, ocr_text in rows:
                    pages_by_doc[document_id].append((page_id, page_order, ocr_text or ""))

        highlight_content = q is not None and search_type in (SearchType.ALL, SearchType.CONTENT)
        results = []
        for document in documents:
            matches = []
            if highlight_content:
                for page_id, page_order, ocr_text in pages_by_doc[document.id]:
                    snippet = highlight(ocr_text, q, self.config.highlight_window)
                    if snippet is not None:
                        matches.append(PageMatch(id=page_id, page_order=page_order, highlights=[snippet]))
            results.append(self._hit(document, matches, len(pages_by_doc[document.id])))

        logger.debug("Search %r by %s: %d of %d", q, actor.id, len(results), total)
        return SearchResponse(
            results=results,
            pagination=Pagination.build(page, limit, total),
            query=q,
            filters={
                "type": search_type.value,
                "category": query.category,
                "date_from": query.date_from,
                "date_to": query.date_to,
                "has_date": query.has_date,
                "has_amount": query.has_amount,
            },
        )

    def _filters(
        self,
        actor: Actor,
        query: SearchQuery,
        search_type: SearchType,
        q: str | None,
    ) -> list[ColumnElement[bool]]:
        # Scope first; everything else only narrows it further
        filters: list[ColumnElement[bool]] = [scope_filter(actor)]

        if q:
            text_clauses: list[ColumnElement[bool]] = []
            if search_type in (SearchType.ALL, SearchType.DOCUMENT):
                text_clauses += [
                    Document.title.icontains(q, autoescape=True),
                    Document.description.icontains(q, autoescape=True),
                    _tag_contains(q),
                ]
            if search_type in (SearchType.ALL, SearchType.CONTENT):
                text_clauses.append(
                    select(Page.id)
                    .where(Page.document_id == Document.id, Page.ocr_text.icontains(q, autoescape=True))
                    .exists()
                )
            filters.append(or_(*text_clauses))

        if query.category:
            filters.append(Document.category == query.category)

        date_from = _as_datetime(query.date_from)
        date_to = _as_datetime(query.date_to, end_of_day=True)
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from is after date_to")
        if date_from:
            filters.append(Document.created_at >= date_from)
        if date_to:
            filters.append(Document.created_at <= date_to)

        if query.has_amount:
            filters.append(self._has_entities("amounts"))
        if query.has_date:
            filters.append(self._has_entities("dates"))

        return filters

    @staticmethod
    def _has_entities(name: str) -> ColumnElement[bool]:
        """Some page of the document has a non-empty ``name`` entity set."""
        return (
            select(Page.id)
            .where(
                Page.document_id == Document.id,
                func.json_array_length(Page.extracted_data, f"$.{name}") > 0,
            )
            .exists()
        )

    # === Entity field search ===

    def search_entities(
        self,
        actor: Actor,
        page: int = 1,
        limit: int | None = None,
        **criteria: str | None,
    ) -> SearchResponse:
        """Find documents whose pages carry matching extracted entities.

        Criteria are ``date``, ``amount``, ``email``, ``phone`` and
        ``keyword``; each is a case-insensitive substring matched only
        against the corresponding entity set of a page. A page must satisfy
        every given criterion.
        """
        unknown = set(criteria) - set(ENTITY_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown entity fields: {', '.join(sorted(unknown))}")
        given = {k: v.strip() for k, v in criteria.items() if v and v.strip()}
        if not given:
            raise ValidationError("At least one entity field is required")

        page, limit = self._paging(page, limit)

        page_conditions = []
        for key, value in given.items():
            entries = func.json_each(Page.extracted_data, f"$.{ENTITY_FIELDS[key]}").table_valued("value")
            page_conditions.append(
                select(1).select_from(entries).where(entries.c.value.icontains(value, autoescape=True)).exists()
            )

        filters = [
            scope_filter(actor),
            select(Page.id).where(Page.document_id == Document.id, *page_conditions).exists(),
        ]

        with read_session(self.session_factory) as session:
            total = session.scalar(select(func.count()).select_from(Document).where(*filters)) or 0
            documents = session.scalars(
                select(Document)
                .where(*filters)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

            matched: dict[str, list[PageMatch]] = {d.id: [] for d in documents}
            counts: dict[str, int] = {}
            if documents:
                ids = list(matched)
                for p in session.scalars(
                    select(Page).where(Page.document_id.in_(ids), *page_conditions).order_by(Page.page_order)
                ):
                    matched[p.document_id].append(
                        PageMatch(id=p.id, page_order=p.page_order, matched_data=dict(p.extracted_data or {}))
                    )
                counts = dict(session.execute(
                    select(Page.document_id, func.count()).where(Page.document_id.in_(ids)).group_by(Page.document_id)
                ).all())

        return SearchResponse(
            results=[self._hit(d, matched[d.id], counts.get(d.id, 0)) for d in documents],
            pagination=Pagination.build(page, limit, total),
            filters=given,
        )

    # === Autocomplete ===

    def suggestions(self, actor: Actor, q: str | None) -> list[Suggestion]:
        """Title, tag and content suggestions; short queries yield nothing."""
        q = (q or "").strip()
        if len(q) < 2:
            return []

        n = self.config.suggestion_limit
        scope = scope_filter(actor)

        with read_session(self.session_factory) as session:
            titles = session.scalars(
                select(Document.title)
                .where(scope, Document.title.icontains(q, autoescape=True))
                .distinct()
                .order_by(Document.title)
                .limit(n)
            ).all()

            tags: list[str] = []
            needle = q.lower()
            tag_rows = session.scalars(
                select(Document.tags)
                .where(scope, _tag_contains(q))
                .order_by(Document.created_at.desc())
            )
            for row in tag_rows:
                for tag in row or []:
                    if isinstance(tag, str) and needle in tag.lower() and tag not in tags:
                        tags.append(tag)
                if len(tags) >= n:
                    break

            snippet = func.substr(Page.ocr_text, 1, 100)
            contents = session.scalars(
                select(snippet)
                .join(Document, Page.document_id == Document.id)
                .where(scope, Page.ocr_text.icontains(q, autoescape=True))
                .distinct()
                .limit(n)
            ).all()

        return (
            [Suggestion(value=t, type="document") for t in titles]
            + [Suggestion(value=t, type="tag") for t in tags[:n]]
            + [Suggestion(value=c, type="content") for c in contents]
        )

    # === Helpers ===

    def _paging(self, page: int | None, limit: int | None) -> tuple[int, int]:
        page = 1 if page is None else int(page)
        limit = self.config.default_limit if limit is None else int(limit)
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        return page, min(limit, self.config.max_limit)

    @staticmethod
    def _search_type(value: SearchType | str | None) -> SearchType:
        try:
            return SearchType(value or SearchType.ALL)
        except ValueError as e:
            raise ValidationError(f"Unknown search type: {value!r}") from e

    @staticmethod
    def _hit(document: Document, matches: list[PageMatch], total_pages: int) -> SearchHit:
        return SearchHit(
            id=document.id,
            title=document.title,
            description=document.description,
            category=document.category,
            tags=list(document.tags or []),
            status=document.status,
            owner_id=document.owner_id,
            created_at=document.created_at,
            updated_at=document.updated_at,
            matched_pages=matches,
            total_pages=total_pages,
        )
