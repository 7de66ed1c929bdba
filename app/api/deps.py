"""FastAPI dependency injection for the identity service.

The service (and the database it wraps) is created once by the
application lifespan and stored on ``app.state``; tests replace it
through ``app.dependency_overrides``.
"""
from __future__ import annotations

from fastapi import Request

from app.identity.service import IdentityService


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service
