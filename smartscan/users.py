"""User administration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from .access import Actor, Permission, require_permission
from .db import read_session, transaction
from .exceptions import ConflictError, NotFoundError, StoreFailure, ValidationError
from .models import Document, Page, Role, User, utcnow
from .storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class UserView:
    id: str
    email: str
    name: str | None
    role: Role
    created_at: datetime
    updated_at: datetime
    document_count: int = 0

    @classmethod
    def from_model(cls, user: User, document_count: int = 0) -> "UserView":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at,
            updated_at=user.updated_at,
            document_count=document_count,
        )


def parse_role(value: Role | str) -> Role:
    try:
        return Role(value)
    except ValueError as e:
        raise ValidationError(
            f"Unknown role: {value!r}. Expected one of: {', '.join(r.value for r in Role)}"
        ) from e


class UserService:
    """Manage accounts and their roles.

    Credentials are stored as given; hashing is up to the identity provider.
    """

    def __init__(self, session_factory: sessionmaker, blob_store: BlobStore | None = None):
        self.session_factory = session_factory
        self.blob_store = blob_store

    def list_users(self, actor: Actor) -> list[UserView]:
        require_permission(actor, Permission.USERS_VIEW)
        with read_session(self.session_factory) as session:
            counts = self._document_counts(session)
            users = session.scalars(select(User).order_by(User.created_at.desc(), User.email)).all()
            return [UserView.from_model(u, counts.get(u.id, 0)) for u in users]

    def get_user(self, actor: Actor, user_id: str) -> UserView:
        require_permission(actor, Permission.USERS_VIEW)
        with read_session(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            count = session.scalar(
                select(func.count()).select_from(Document).where(Document.owner_id == user_id)
            )
            return UserView.from_model(user, count or 0)

    def find_by_email(self, email: str) -> User | None:
        """Lookup used by identity providers; no permission check."""
        with read_session(self.session_factory) as session:
            return session.scalar(select(User).where(User.email == email.strip().lower()))

    def create_user(
        self,
        actor: Actor,
        email: str,
        password_hash: str,
        name: str | None = None,
        role: Role | str = Role.USER,
    ) -> UserView:
        require_permission(actor, Permission.USERS_MANAGE)

        email = (email or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError(f"Invalid email: {email!r}")
        if not password_hash:
            raise ValidationError("Password credential is required")
        role = parse_role(role)

        with transaction(self.session_factory) as session:
            if session.scalar(select(User.id).where(User.email == email)) is not None:
                raise ConflictError(f"User with email {email} already exists")
            user = User(email=email, password_hash=password_hash, name=name, role=role)
            session.add(user)
            session.flush()
            view = UserView.from_model(user)

        logger.info("User %s created with role %s by %s", email, role.value, actor.id)
        return view

    def update_role(self, actor: Actor, user_id: str, role: Role | str) -> UserView:
        require_permission(actor, Permission.USERS_MANAGE)
        role = parse_role(role)

        if user_id == actor.id and actor.role == Role.ADMIN and role != Role.ADMIN:
            raise ValidationError("You cannot remove your own admin role")

        with transaction(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            previous = user.role
            user.role = role
            user.updated_at = utcnow()
            session.flush()
            view = UserView.from_model(user)

        logger.info("Role of %s changed from %s to %s by %s", view.email, previous.value, role.value, actor.id)
        return view

    def delete_user(self, actor: Actor, user_id: str) -> None:
        """Delete an account together with its documents and their stored files."""
        require_permission(actor, Permission.USERS_MANAGE)
        if user_id == actor.id:
            raise ValidationError("You cannot delete your own account")

        with transaction(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            paths = session.scalars(
                select(Page.file_path).join(Document, Page.document_id == Document.id).where(
                    Document.owner_id == user_id
                )
            ).all()
            session.delete(user)

        logger.info("User %s deleted by %s (%d stored file(s))", user_id, actor.id, len(paths))

        if self.blob_store is None:
            return
        for path in paths:
            try:
                self.blob_store.delete(path)
            except StoreFailure as e:
                logger.error("Blob %s of deleted user %s not removed: %s", path, user_id, e)

    @staticmethod
    def _document_counts(session) -> dict[str, int]:
        return dict(session.execute(
            select(Document.owner_id, func.count()).group_by(Document.owner_id)
        ).all())
