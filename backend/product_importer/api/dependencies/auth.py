"""Admin identity derived from request headers."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Header

from product_importer.core.config import get_settings
from product_importer.core.errors import PermissionDenied, Unauthorized

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class AdminIdentity:
    user_id: str
    role: str


def get_current_admin(
    x_admin_token: str | None = Header(None),
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> AdminIdentity:
    """Require the shared admin token; the user id scopes jobs and profiles."""
    expected = get_settings().admin_token
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise Unauthorized("Valid X-Admin-Token header required", details={"header": "X-Admin-Token"})
    role = (x_user_role or ADMIN_ROLE).strip().lower()
    if role != ADMIN_ROLE:
        logger.warning(f"Rejected request from {x_user_id} with role {role}")
        raise PermissionDenied("Admin role required", details={"role": role})
    return AdminIdentity(user_id=(x_user_id or "admin").strip() or "admin", role=role)
