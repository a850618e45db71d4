"""Roles, permissions and document visibility.

The same rules back ingestion (who may create), document management
(who may edit or delete) and search (who may see). Two independent
mechanisms are involved:

- a role hierarchy (admin > manager > user > guest) for threshold checks
- a fixed permission matrix naming, per permission, the exact roles that
  hold it. ``*_own`` permissions additionally require ownership;
  ``*_all`` permissions skip the ownership check.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Literal

from sqlalchemy import false, true
from sqlalchemy.sql.elements import ColumnElement

from .exceptions import ConfigurationError, ForbiddenError, NotFoundError
from .models import Document, Role

logger = logging.getLogger(__name__)

Action = Literal["view", "edit", "delete"]

ROLE_RANKS: dict[Role, int] = {
    Role.GUEST: 0,
    Role.USER: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
}

ELEVATED_ROLES = frozenset({Role.ADMIN, Role.MANAGER})


class Permission(str, enum.Enum):
    DOCUMENTS_VIEW_OWN = "documents:view_own"
    DOCUMENTS_VIEW_ALL = "documents:view_all"
    DOCUMENTS_CREATE = "documents:create"
    DOCUMENTS_EDIT_OWN = "documents:edit_own"
    DOCUMENTS_EDIT_ALL = "documents:edit_all"
    DOCUMENTS_DELETE_OWN = "documents:delete_own"
    DOCUMENTS_DELETE_ALL = "documents:delete_all"
    USERS_VIEW = "users:view"
    USERS_MANAGE = "users:manage"
    STATS_VIEW = "stats:view"
    ADMIN_ACCESS = "admin:access"


PERMISSION_MATRIX: dict[Permission, frozenset[Role]] = {
    Permission.DOCUMENTS_VIEW_OWN: frozenset({Role.ADMIN, Role.MANAGER, Role.USER}),
    Permission.DOCUMENTS_VIEW_ALL: frozenset({Role.ADMIN, Role.MANAGER}),
    Permission.DOCUMENTS_CREATE: frozenset({Role.ADMIN, Role.MANAGER, Role.USER}),
    Permission.DOCUMENTS_EDIT_OWN: frozenset({Role.ADMIN, Role.MANAGER, Role.USER}),
    Permission.DOCUMENTS_EDIT_ALL: frozenset({Role.ADMIN, Role.MANAGER}),
    Permission.DOCUMENTS_DELETE_OWN: frozenset({Role.ADMIN, Role.MANAGER, Role.USER}),
    Permission.DOCUMENTS_DELETE_ALL: frozenset({Role.ADMIN}),
    Permission.USERS_VIEW: frozenset({Role.ADMIN, Role.MANAGER}),
    Permission.USERS_MANAGE: frozenset({Role.ADMIN}),
    Permission.STATS_VIEW: frozenset({Role.ADMIN, Role.MANAGER}),
    Permission.ADMIN_ACCESS: frozenset({Role.ADMIN}),
}

_ACTION_PERMISSIONS: dict[str, tuple[Permission, Permission]] = {
    "view": (Permission.DOCUMENTS_VIEW_OWN, Permission.DOCUMENTS_VIEW_ALL),
    "edit": (Permission.DOCUMENTS_EDIT_OWN, Permission.DOCUMENTS_EDIT_ALL),
    "delete": (Permission.DOCUMENTS_DELETE_OWN, Permission.DOCUMENTS_DELETE_ALL),
}


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of one request, as supplied by the identity provider."""

    id: str
    role: Role

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


def validate_permission_matrix(
    matrix: dict[Permission, frozenset[Role]] = PERMISSION_MATRIX,
) -> None:
    """Check the matrix against the enums once at startup.

    Raises ``ConfigurationError`` when a permission has no entry, when an
    entry names something that is not a ``Role``, or when an ``_all``
    permission grants a role that its ``_own`` counterpart does not.
    """
    missing = [p.value for p in Permission if p not in matrix]
    if missing:
        raise ConfigurationError(f"Permissions without roles: {', '.join(missing)}")

    for permission, roles in matrix.items():
        if not isinstance(permission, Permission):
            raise ConfigurationError(f"Unknown permission in matrix: {permission!r}")
        unknown = [r for r in roles if not isinstance(r, Role)]
        if unknown:
            raise ConfigurationError(f"{permission.value} names unknown roles: {unknown!r}")

    for own, every in _ACTION_PERMISSIONS.values():
        if not matrix[every] <= matrix[own]:
            raise ConfigurationError(f"{every.value} grants roles missing from {own.value}")

    logger.debug("Permission matrix validated (%d permissions)", len(matrix))


def role_satisfies(actual: Role, required: Role) -> bool:
    """Threshold check against the role hierarchy."""
    return ROLE_RANKS[Role(actual)] >= ROLE_RANKS[Role(required)]


def has_permission(role: Role | None, permission: Permission) -> bool:
    """Whether the role is listed for the permission in the matrix."""
    if role is None:
        return False
    return Role(role) in PERMISSION_MATRIX.get(Permission(permission), frozenset())


def require_permission(actor: Actor, permission: Permission) -> None:
    if not has_permission(actor.role, permission):
        raise ForbiddenError(f"Role '{Role(actor.role).value}' lacks permission '{permission.value}'")


def can_access_document(actor: Actor, document: Document, action: Action = "view") -> bool:
    """Whether the actor may perform ``action`` on this particular document."""
    own, every = _ACTION_PERMISSIONS[action]
    if has_permission(actor.role, every):
        return True
    return has_permission(actor.role, own) and document.owner_id == actor.id


def require_document_access(actor: Actor, document: Document | None, action: Action = "view") -> Document:
    """Return the document or raise.

    A role that lacks the permission outright gets ``ForbiddenError``.
    A role that only holds the ``_own`` permission gets ``NotFoundError`` for
    documents it does not own, so ownership is never disclosed.
    """
    own, every = _ACTION_PERMISSIONS[action]
    if not (has_permission(actor.role, own) or has_permission(actor.role, every)):
        raise ForbiddenError(f"Role '{Role(actor.role).value}' may not {action} documents")
    if document is None or not can_access_document(actor, document, action):
        raise NotFoundError("Document not found")
    return document


def scope_filter(actor: Actor) -> ColumnElement[bool]:
    """Predicate bounding which documents a query may return for this actor."""
    if has_permission(actor.role, Permission.DOCUMENTS_VIEW_ALL):
        return true()
    if has_permission(actor.role, Permission.DOCUMENTS_VIEW_OWN):
        return Document.owner_id == actor.id
    return false()
