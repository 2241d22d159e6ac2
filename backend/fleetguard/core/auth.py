"""Operator identity dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from fleetguard.core.config import get_settings


@dataclass
class OperatorContext:
    operator_id: str
    role: str


SUPPORTED_ROLES = {"admin", "analyst"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def get_operator_context(
    x_operator_id: str | None = Header(default=None, alias="X-Operator-ID"),
    x_operator_role: str | None = Header(default=None, alias="X-Operator-Role"),
) -> OperatorContext:
    """Resolve the calling operator from headers, falling back to the default operator."""
    settings = get_settings()
    operator_id = (x_operator_id or settings.default_operator_id or "").strip()
    if not operator_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator identity required",
        )
    return OperatorContext(operator_id=operator_id, role=_normalize_role(x_operator_role))


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OperatorContext = Depends(get_operator_context)) -> OperatorContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
