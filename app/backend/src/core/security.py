"""Credential resolution for API keys and browser sessions."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.backend.src.db import session_scope
from app.backend.src.models import ApiKey, AuthSession
from app.backend.src.models.base import utcnow

from .errors import AuthError

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """The organization and user a request acts on behalf of."""

    organization_id: str
    user_id: str
    api_key_id: str | None = None


def hash_token(token: str) -> str:
    """Return the hex SHA-256 digest stored in place of a raw credential."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityResolver:
    """Maps a bearer API key or a session cookie to an :class:`Identity`.

    An ``Authorization: Bearer <key>`` header is tried first; the session
    cookie is consulted only when no usable API key is presented.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        cookie_name: str = "docflow.session_token",
    ) -> None:
        self.session_factory = session_factory
        self.cookie_name = cookie_name

    def resolve(
        self,
        authorization: str | None,
        cookies: Mapping[str, str] | None = None,
    ) -> Identity:
        token = bearer_token(authorization)
        if token:
            identity = self._from_api_key(token)
            if identity is not None:
                return identity

        session_token = (cookies or {}).get(self.cookie_name)
        if session_token:
            identity = self._from_session(session_token)
            if identity is not None:
                return identity

        raise AuthError("Unauthorized")

    def _from_api_key(self, token: str) -> Identity | None:
        key_hash = hash_token(token)
        with session_scope(self.session_factory) as session:
            api_key = session.execute(
                select(ApiKey).where(ApiKey.key_hash == key_hash)
            ).scalar_one_or_none()
            if api_key is None or not api_key.is_active:
                LOGGER.info("api_key_rejected", reason="unknown" if api_key is None else "inactive")
                return None
            session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key.id)
                .values(request_count=ApiKey.request_count + 1, last_used_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return Identity(
                organization_id=api_key.organization_id,
                user_id=api_key.user_id,
                api_key_id=api_key.id,
            )

    def _from_session(self, token: str) -> Identity | None:
        with session_scope(self.session_factory) as session:
            auth_session = session.execute(
                select(AuthSession).where(AuthSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if auth_session is None:
                return None
            expires_at = auth_session.expires_at
            # SQLite hands back naive datetimes.
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= utcnow():
                LOGGER.info("session_expired", session_id=auth_session.id)
                return None
            if not auth_session.active_organization_id:
                LOGGER.info("session_without_organization", session_id=auth_session.id)
                return None
            return Identity(
                organization_id=auth_session.active_organization_id,
                user_id=auth_session.user_id,
            )


__all__ = ["Identity", "IdentityResolver", "bearer_token", "hash_token"]
