from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Request

from rewards.config import settings


@dataclass(slots=True, frozen=True)
class AdminAuthContext:
    configured: bool
    authorized: bool
    via: str | None = None


def token_from_request(request: Request) -> str | None:
    token = request.query_params.get("token")
    if token:
        return token
    header = request.headers.get("x-admin-token", "").strip()
    return header or None


def get_admin_auth_context(request: Request) -> AdminAuthContext:
    expected = settings.admin_api_token.strip()
    if not expected:
        return AdminAuthContext(configured=False, authorized=False)

    provided = token_from_request(request)
    if provided and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return AdminAuthContext(configured=True, authorized=True, via="token")
    return AdminAuthContext(configured=True, authorized=False)


def admin_actor(request: Request) -> str:
    actor = request.headers.get("x-admin-actor", "").strip()
    return actor[:255] if actor else "admin-api"
