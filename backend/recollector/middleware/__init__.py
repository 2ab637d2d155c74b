"""Middleware module for the Recollector backend."""

from recollector.middleware.auth_gate import (
    AuthenticatedIdentity,
    AuthenticationGate,
    AuthenticationMiddleware,
    get_identity,
    require_identity,
)
from recollector.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "AuthenticatedIdentity",
    "AuthenticationGate",
    "AuthenticationMiddleware",
    "SecurityHeadersMiddleware",
    "get_identity",
    "require_identity",
]
