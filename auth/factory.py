"""
auth/factory.py -- Build the auth components from Settings.

Used by the API lifespan and the CLI so both assemble the same graph:

    store   = build_refresh_store(settings)        # None when refresh_store="none"
    tokens  = build_token_service(settings, store)
    manager = AuthSessionManager(users, build_password_hasher(settings), tokens)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from auth.memory_store import MemoryRefreshTokenStore
from auth.passwords import BcryptPasswordHasher
from auth.sessions import AuthSessionManager
from auth.store import RefreshTokenStore, SqlRefreshTokenStore
from auth.tokens import JWTService
from auth.users import UserRepository
from core.config import Settings

logger = logging.getLogger("suiteauth.auth")


def build_refresh_store(settings: Settings) -> Optional[RefreshTokenStore]:
    if settings.refresh_store == "memory":
        return MemoryRefreshTokenStore()
    if settings.refresh_store == "sql":
        return SqlRefreshTokenStore(db_url=settings.database_url)
    logger.warning("refresh_store=none: refresh tokens are stateless and cannot be revoked")
    return None


def build_password_hasher(settings: Settings) -> BcryptPasswordHasher:
    return BcryptPasswordHasher(cost=settings.bcrypt_cost)


def build_token_service(settings: Settings, store: Optional[RefreshTokenStore]) -> JWTService:
    return JWTService(
        settings.secret_key,
        timedelta(seconds=settings.access_token_expire_seconds),
        timedelta(seconds=settings.refresh_token_expire_seconds),
        store=store,
    )


def build_session_manager(
    settings: Settings,
    users: UserRepository,
    store: Optional[RefreshTokenStore],
) -> AuthSessionManager:
    return AuthSessionManager(
        users,
        build_password_hasher(settings),
        build_token_service(settings, store),
        store=store,
    )
