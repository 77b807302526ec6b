from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .constants import LOGGER
from .store import MemorySessionStore, SessionStore
from .tokens import DefaultTokenGenerator, DefaultTokenHasher, TokenGenerator, TokenHasher

DEFAULT_COOKIE_NAME = "session.id"
DEFAULT_EXPIRE_IN = 86400
MIN_TOKEN_SIZE = 128

SESSION_KEYS = frozenset(
    {
        "cookie",
        "expire_in",
        "size",
        "session_store",
        "session_hasher",
        "session_generator",
    }
)


class ConfigurationError(RuntimeError):
    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(f"{message}: {'; '.join(errors)}")
        self.errors = list(errors)


@dataclass(frozen=True)
class CookieOptions:
    name: str
    secure: bool


@dataclass(frozen=True)
class SessionConfig:
    cookie: CookieOptions
    expire_in: int
    size: int
    session_store: SessionStore
    session_hasher: TokenHasher
    session_generator: TokenGenerator


def session_defaults() -> dict[str, Any]:
    """Fresh default values; every call builds new store/hasher/generator objects."""
    return {
        "cookie": {"name": DEFAULT_COOKIE_NAME, "secure": True},
        "expire_in": DEFAULT_EXPIRE_IN,
        "size": MIN_TOKEN_SIZE,
        "session_store": MemorySessionStore(),
        "session_hasher": DefaultTokenHasher(),
        "session_generator": DefaultTokenGenerator(),
    }


def merge_overrides(defaults: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    merged = {
        key: dict(value) if isinstance(value, Mapping) else value
        for key, value in defaults.items()
    }
    for key, value in (overrides or {}).items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = merge_overrides(current, value)
        else:
            merged[key] = value
    return merged


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_session_values(values: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []

    cookie = values.get("cookie")
    if cookie is None:
        errors.append("Cookie is missing")
    elif not isinstance(cookie, Mapping):
        errors.append("Cookie must be a mapping with name and secure")
    else:
        name = cookie.get("name")
        if not isinstance(name, str) or not name:
            errors.append("Cookie name is missing")
        if not isinstance(cookie.get("secure"), bool):
            errors.append("Cookie secure is missing")

    expire_in = values.get("expire_in")
    if not is_finite_number(expire_in) or expire_in <= 0:
        errors.append("expire_in must be a positive finite number (seconds)")

    size = values.get("size")
    if not is_finite_number(size) or size < MIN_TOKEN_SIZE:
        errors.append(f"Size is not a number or is less than {MIN_TOKEN_SIZE}")

    if not values.get("session_generator"):
        errors.append("Session generator is missing")
    if not values.get("session_hasher"):
        errors.append("Session hasher is missing")
    if not values.get("session_store"):
        errors.append("Session store is missing")

    return errors


def unknown_keys(values: Mapping[str, Any], known: frozenset[str]) -> list[str]:
    return [f"Unknown configuration option: {key}" for key in sorted(set(values) - known)]


def session_config_from_values(values: Mapping[str, Any]) -> SessionConfig:
    cookie = values["cookie"]
    return SessionConfig(
        cookie=CookieOptions(name=cookie["name"], secure=cookie["secure"]),
        expire_in=math.ceil(values["expire_in"]),
        size=int(values["size"]),
        session_store=values["session_store"],
        session_hasher=values["session_hasher"],
        session_generator=values["session_generator"],
    )


def build_session_config(overrides: Mapping[str, Any] | None = None) -> SessionConfig:
    values = merge_overrides(session_defaults(), overrides)
    errors = unknown_keys(values, SESSION_KEYS) + validate_session_values(values)
    if errors:
        LOGGER.error("Invalid session config: %s", errors)
        raise ConfigurationError("Invalid session config", errors)
    return session_config_from_values(values)
