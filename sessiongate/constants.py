from __future__ import annotations

import logging

LOGGER = logging.getLogger("sessiongate")
APP_VERSION = "0.1.0"

SESSION_KEY_PREFIX = "session:"
CHALLENGE_KEY_PREFIX = "challenge:signIn:"

# Static asset the browser fetches on its own; never bound to a session.
FAVICON_PATH = "/favicon.ico"

SESSION_FIELDS = ("identity", "created")


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def challenge_key(challenge_id: str) -> str:
    return f"{CHALLENGE_KEY_PREFIX}{challenge_id}"
