from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import AnyHttpUrl, ValidationError

from .constants import LOGGER
from .store import MemorySessionStore, RedisSessionStore

PRODUCTION_ENV = "production"
REQUIRED_PRODUCTION_VARS = (
    "KEYCLOAK_ISSUER",
    "KEYCLOAK_CLIENT_ID",
    "KEYCLOAK_CLIENT_SECRET",
    "KEYCLOAK_EXPIRE_IN",
)


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_str(key: str) -> str | None:
    raw = os.getenv(key, "").strip()
    return raw or None


def is_production() -> bool:
    return os.getenv("APP_ENV", "development").strip().lower() == PRODUCTION_ENV


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    from dotenv import load_dotenv

    load_dotenv(env_path, override=True)


def validate_env() -> None:
    missing = [key for key in REQUIRED_PRODUCTION_VARS if not _get_env_str(key)]
    if missing:
        if is_production():
            raise RuntimeError(
                f"Missing required environment variables for production: {', '.join(missing)}"
            )
        LOGGER.warning(
            "Using development defaults for %s; never run this configuration in production.",
            ", ".join(missing),
        )

    issuer = _get_env_str("KEYCLOAK_ISSUER")
    if issuer:
        try:
            parsed = AnyHttpUrl(issuer)
        except ValidationError as error:
            raise RuntimeError(f"KEYCLOAK_ISSUER must be a valid URL: {issuer}") from error
        if is_production() and parsed.scheme != "https":
            raise RuntimeError("KEYCLOAK_ISSUER must use https in production.")

    # Raises on a non-integer value; range checks belong to config validation.
    _get_env_int("KEYCLOAK_EXPIRE_IN", 0)


def oidc_overrides_from_env() -> dict[str, Any]:
    """Map environment variables onto middleware configuration overrides.

    Only variables that are set produce overrides; the rest keep the
    (development-only) defaults.
    """
    overrides: dict[str, Any] = {}

    for key, option in (
        ("KEYCLOAK_ISSUER", "issuer"),
        ("KEYCLOAK_CLIENT_ID", "client_id"),
        ("KEYCLOAK_CLIENT_SECRET", "client_secret"),
    ):
        value = _get_env_str(key)
        if value:
            overrides[option] = value

    if _get_env_str("KEYCLOAK_EXPIRE_IN"):
        overrides["expire_in"] = _get_env_int("KEYCLOAK_EXPIRE_IN", 0)

    cookie: dict[str, Any] = {}
    cookie_name = _get_env_str("SESSION_COOKIE_NAME")
    if cookie_name:
        cookie["name"] = cookie_name
    if os.getenv("SESSION_COOKIE_SECURE") is not None:
        cookie["secure"] = is_truthy(os.getenv("SESSION_COOKIE_SECURE"))
    if cookie:
        overrides["cookie"] = cookie

    if os.getenv("OIDC_AUTO_SIGNIN") is not None:
        overrides["challenge"] = {"signin": is_truthy(os.getenv("OIDC_AUTO_SIGNIN"))}

    redis_url = _get_env_str("REDIS_URL")
    if redis_url:
        overrides["session_store"] = RedisSessionStore.from_url(redis_url)
    else:
        if is_production():
            LOGGER.warning("REDIS_URL is not set; sessions live in process memory only.")
        overrides["session_store"] = MemorySessionStore()

    return overrides


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("SESSIONGATE_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
