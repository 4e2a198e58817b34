"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Callable, Optional

from fastapi import Header, HTTPException, Request, status

from marketplace.app.entitlements.models import AccountRole, AuthenticatedIdentity

IdentityResolver = Callable[[Request], Optional[AuthenticatedIdentity]]

_identity_resolver: Optional[IdentityResolver] = None


def configure(*, identity_resolver: IdentityResolver) -> None:
    """Register the login layer's resolver for the current request's identity."""

    global _identity_resolver
    _identity_resolver = identity_resolver


def reset() -> None:
    global _identity_resolver
    _identity_resolver = None


def resolve_identity_from_headers(request: Request) -> Optional[AuthenticatedIdentity]:
    """Read the identity a trusted gateway forwarded after verifying credentials."""

    account_id = request.headers.get("X-Account-Id")
    role = request.headers.get("X-Account-Role")
    if not account_id or not role:
        return None
    try:
        return AuthenticatedIdentity(
            account_id=account_id,
            role=AccountRole(role.strip().lower()),
            email=request.headers.get("X-Account-Email") or None,
        )
    except ValueError:
        return None


def get_current_identity(request: Request) -> AuthenticatedIdentity:
    resolver = _identity_resolver or resolve_identity_from_headers
    identity = resolver(request)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return identity


def get_admin_identity(request: Request) -> AuthenticatedIdentity:
    identity = get_current_identity(request)
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


def get_bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


__all__ = [
    "IdentityResolver",
    "configure",
    "get_admin_identity",
    "get_bearer_token",
    "get_current_identity",
    "reset",
    "resolve_identity_from_headers",
]
