"""FastAPI server for SmartScan.

Every route except the health check requires ``Authorization: Bearer <token>``.
Tokens are resolved to an actor by the identity provider; the role is taken
as given for the duration of one request.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Protocol

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from . import __version__
from .access import Actor, validate_permission_matrix
from .config import SmartScanConfig
from .db import get_engine, get_session_factory, init_db
from .documents import DocumentService
from .exceptions import AuthError, SmartScanError, ValidationError
from .log import setup_logging
from .pipeline import DocumentIngester, EntityExtractor, IncomingFile, OCREngine
from .search import SearchEngine, SearchQuery
from .storage import BlobStore
from .users import UserService

logger = logging.getLogger(__name__)


# === Identity ===


class IdentityProvider(Protocol):
    def resolve(self, token: str) -> Actor | None:
        """Return the actor for a bearer token, or None when it is unknown."""
        ...


class TokenIdentityProvider:
    """Map configured API tokens to user accounts by email."""

    def __init__(self, tokens: dict[str, str], users: UserService):
        self.tokens = dict(tokens)
        self.users = users

    def resolve(self, token: str) -> Actor | None:
        email = None
        for known, known_email in self.tokens.items():
            if secrets.compare_digest(known.encode(), token.encode()):
                email = known_email
                break
        if email is None:
            return None

        user = self.users.find_by_email(email)
        if user is None:
            logger.warning("Token maps to unknown user %s", email)
            return None
        return Actor(id=user.id, role=user.role)


# === Request bodies ===


class DocumentUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    tags: list[str] | None = None


class PageUpdate(BaseModel):
    ocr_text: str | None = None
    extracted_data: dict[str, Any] | None = None


class UserCreate(BaseModel):
    email: str
    password_hash: str
    name: str | None = None
    role: str = "user"


class RoleUpdate(BaseModel):
    role: str


def _parse_tags(value: str | None) -> list[str]:
    """Tags arrive as a JSON array or a comma separated string."""
    if not value or not value.strip():
        return []
    value = value.strip()
    if value.startswith("["):
        try:
            tags = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid tags: {e}") from e
        if not isinstance(tags, list):
            raise ValidationError("Tags must be a list")
        return [str(t).strip() for t in tags if str(t).strip()]
    return [t.strip() for t in value.split(",") if t.strip()]


def create_app(
    config: SmartScanConfig | None = None,
    engine: Engine | None = None,
    identity: IdentityProvider | None = None,
    ocr_engine: OCREngine | None = None,
) -> FastAPI:
    """Create the FastAPI application and wire its components."""
    config = config or SmartScanConfig()
    setup_logging(config.log_level)
    validate_permission_matrix()

    engine = engine or get_engine(config.resolved_database_url)
    init_db(engine)
    session_factory = get_session_factory(engine)

    blob_store = BlobStore(config.resolved_upload_dir)
    extractor = EntityExtractor()
    users = UserService(session_factory, blob_store)

    app = FastAPI(
        title="SmartScan",
        description="Scanned document archive with OCR and role-scoped search",
        version=__version__,
    )

    app.state.config = config
    app.state.engine = engine
    app.state.identity = identity or TokenIdentityProvider(config.server.api_tokens, users)
    app.state.users = users
    app.state.documents = DocumentService(
        session_factory,
        blob_store,
        extractor,
        default_limit=config.search.default_limit,
        max_limit=config.search.max_limit,
    )
    app.state.search = SearchEngine(session_factory, config.search)
    app.state.ingester = DocumentIngester(
        session_factory,
        blob_store,
        ocr_engine or OCREngine.from_config(config.ocr),
        extractor,
        max_file_size=config.storage.max_file_size,
        max_files=config.storage.max_files,
    )

    # === Errors ===

    @app.exception_handler(SmartScanError)
    async def handle_smartscan_error(request: Request, exc: SmartScanError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.kind, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=ValidationError.status_code,
            content={"success": False, "error": ValidationError.kind, "message": str(exc.errors())},
        )

    # Token verification dependency
    def current_actor(authorization: str | None = Header(None)) -> Actor:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Missing bearer token")
        actor = app.state.identity.resolve(token.strip())
        if actor is None:
            raise AuthError("Invalid or expired token")
        return actor

    # === Routes ===

    @app.get("/api/health")
    def health():
        """Health check (no auth required)."""
        return {"status": "ok", "version": __version__}

    # --- Documents ---

    @app.post("/api/documents", status_code=201)
    async def upload_documents(
        files: list[UploadFile] = File(...),
        title: str | None = Form(None),
        description: str | None = Form(None),
        category: str | None = Form(None),
        tags: str | None = Form(None),
        actor: Actor = Depends(current_actor),
    ):
        """Upload one batch of scanned pages as a single document."""
        incoming = [
            IncomingFile(filename=f.filename or "", content=await f.read(), mime_type=f.content_type)
            for f in files
        ]
        result = await app.state.ingester.ingest(
            actor,
            incoming,
            title=title,
            description=description,
            category=category,
            tags=_parse_tags(tags),
        )
        return {
            "success": True,
            "message": f"Document uploaded, {result.pages_processed} page(s) processed",
            "document": {
                "id": result.document_id,
                "status": result.status,
                "pages_processed": result.pages_processed,
                "has_pdf": result.has_pdf,
                "has_word": result.has_word,
                "pages": result.pages,
            },
        }

    @app.get("/api/documents")
    def list_documents(
        page: int = 1,
        limit: int | None = None,
        status: str | None = None,
        category: str | None = None,
        search: str | None = None,
        actor: Actor = Depends(current_actor),
    ):
        listing = app.state.documents.list_documents(
            actor, page=page, limit=limit, status=status, category=category, search=search
        )
        return {"success": True, "documents": listing.documents, "pagination": listing.pagination}

    @app.get("/api/documents/{document_id}")
    def get_document(document_id: str, actor: Actor = Depends(current_actor)):
        return {"success": True, "document": app.state.documents.get_document(actor, document_id)}

    @app.put("/api/documents/{document_id}")
    def update_document(document_id: str, body: DocumentUpdate, actor: Actor = Depends(current_actor)):
        document = app.state.documents.update_document(
            actor,
            document_id,
            title=body.title,
            description=body.description,
            category=body.category,
            tags=body.tags,
        )
        return {"success": True, "document": document}

    @app.put("/api/documents/{document_id}/pages/{page_id}")
    def update_page(
        document_id: str,
        page_id: str,
        body: PageUpdate,
        actor: Actor = Depends(current_actor),
    ):
        page = app.state.documents.update_page(
            actor, document_id, page_id, ocr_text=body.ocr_text, extracted_data=body.extracted_data
        )
        return {"success": True, "page": page}

    @app.delete("/api/documents/{document_id}")
    def delete_document(document_id: str, actor: Actor = Depends(current_actor)):
        app.state.documents.delete_document(actor, document_id)
        return {"success": True, "message": "Document deleted"}

    # --- Search ---

    @app.get("/api/search")
    def search(
        q: str | None = None,
        type: str = "all",
        category: str | None = None,
        date_from: str | None = Query(None, alias="dateFrom"),
        date_to: str | None = Query(None, alias="dateTo"),
        has_date: bool = Query(False, alias="hasDate"),
        has_amount: bool = Query(False, alias="hasAmount"),
        page: int = 1,
        limit: int | None = None,
        actor: Actor = Depends(current_actor),
    ):
        """Full-text search within the actor's scope."""
        response = app.state.search.search(actor, SearchQuery(
            q=q,
            type=type,
            category=category,
            date_from=date_from,
            date_to=date_to,
            has_date=has_date,
            has_amount=has_amount,
            page=page,
            limit=limit,
        ))
        return {"success": True, **_as_payload(response)}

    @app.get("/api/search/suggestions")
    def suggestions(q: str | None = None, actor: Actor = Depends(current_actor)):
        return {"success": True, "suggestions": app.state.search.suggestions(actor, q)}

    @app.get("/api/search/advanced")
    def search_entities(
        date: str | None = None,
        amount: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        keyword: str | None = None,
        page: int = 1,
        limit: int | None = None,
        actor: Actor = Depends(current_actor),
    ):
        """Search by extracted entities."""
        response = app.state.search.search_entities(
            actor,
            page=page,
            limit=limit,
            date=date,
            amount=amount,
            email=email,
            phone=phone,
            keyword=keyword,
        )
        return {"success": True, **_as_payload(response)}

    # --- Administration ---

    @app.get("/api/admin/users")
    def list_users(actor: Actor = Depends(current_actor)):
        return {"success": True, "users": app.state.users.list_users(actor)}

    @app.post("/api/admin/users", status_code=201)
    def create_user(body: UserCreate, actor: Actor = Depends(current_actor)):
        user = app.state.users.create_user(
            actor, body.email, body.password_hash, name=body.name, role=body.role
        )
        return {"success": True, "user": user}

    @app.get("/api/admin/users/{user_id}")
    def get_user(user_id: str, actor: Actor = Depends(current_actor)):
        return {"success": True, "user": app.state.users.get_user(actor, user_id)}

    @app.put("/api/admin/users/{user_id}/role")
    def update_role(user_id: str, body: RoleUpdate, actor: Actor = Depends(current_actor)):
        return {"success": True, "user": app.state.users.update_role(actor, user_id, body.role)}

    @app.delete("/api/admin/users/{user_id}")
    def delete_user(user_id: str, actor: Actor = Depends(current_actor)):
        app.state.users.delete_user(actor, user_id)
        return {"success": True, "message": "User deleted"}

    @app.get("/api/admin/stats")
    def stats(actor: Actor = Depends(current_actor)):
        return {"success": True, "stats": app.state.documents.stats(actor)}

    return app


def _as_payload(response) -> dict[str, Any]:
    return {
        "query": response.query,
        "filters": response.filters,
        "results": response.results,
        "pagination": response.pagination,
    }
