from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Union

from sessiongate.constants import LOGGER


@dataclass
class Challenge:
    state: str
    code_verifier: str
    original_redirect_uri: str
    redirect_uri: str
    scopes: list[str]

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "Challenge":
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise RuntimeError("Challenge record must be a JSON object.")
        try:
            return cls(
                state=payload["state"],
                code_verifier=payload["code_verifier"],
                original_redirect_uri=payload["original_redirect_uri"],
                redirect_uri=payload["redirect_uri"],
                scopes=list(payload["scopes"]),
            )
        except KeyError as error:
            raise RuntimeError(f"Challenge record missing {error.args[0]}.") from error


@dataclass
class IdentityBundle:
    access_token_raw: str
    access_token_expires_at: float
    access_token_expires_in_seconds: int
    id_token_raw: str
    token_type: str
    scopes: list[str]
    access_token: dict[str, Any]
    id_token: dict[str, Any]
    refresh_token_raw: str | None = None
    refresh_token: dict[str, Any] | None = None
    session_state: str | None = None
    validation_errors: list[str] = field(default_factory=list)
    authenticated: bool = True

    @classmethod
    def from_payload(cls, payload: dict) -> "IdentityBundle":
        if payload.get("authenticated") is not True:
            raise RuntimeError("Identity payload is not authenticated.")

        for name in ("access_token_raw", "id_token_raw", "token_type"):
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise RuntimeError(f"Identity payload missing {name}.")
        for name in ("access_token", "id_token"):
            if not isinstance(payload.get(name), dict):
                raise RuntimeError(f"Identity payload missing decoded {name}.")
        if not isinstance(payload.get("scopes"), list):
            raise RuntimeError("Identity payload scopes must be a list.")

        return cls(
            access_token_raw=payload["access_token_raw"],
            access_token_expires_at=float(payload.get("access_token_expires_at", 0)),
            access_token_expires_in_seconds=int(payload.get("access_token_expires_in_seconds", 0)),
            id_token_raw=payload["id_token_raw"],
            token_type=payload["token_type"],
            scopes=list(payload["scopes"]),
            access_token=payload["access_token"],
            id_token=payload["id_token"],
            refresh_token_raw=payload.get("refresh_token_raw"),
            refresh_token=payload.get("refresh_token"),
            session_state=payload.get("session_state"),
            validation_errors=list(payload.get("validation_errors", [])),
        )

    @property
    def subject(self) -> str | None:
        return self.id_token.get("sub") or self.access_token.get("sub")


@dataclass(frozen=True)
class Anonymous:
    authenticated = False


@dataclass(frozen=True)
class Authenticated:
    bundle: IdentityBundle
    authenticated = True


Identity = Union[Anonymous, Authenticated]

ANONYMOUS = Anonymous()


def serialize_identity(identity: Identity) -> str:
    if isinstance(identity, Authenticated):
        return json.dumps(asdict(identity.bundle), separators=(",", ":"))
    return json.dumps(None)


def decode_identity(raw: str | None) -> Identity:
    """Decode the stored ``identity`` field; anything malformed is anonymous."""
    if raw is None:
        return ANONYMOUS
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Discarding unparsable session identity.")
        return ANONYMOUS
    if payload is None:
        return ANONYMOUS
    if not isinstance(payload, dict):
        LOGGER.warning("Discarding session identity of type %s.", type(payload).__name__)
        return ANONYMOUS
    try:
        return Authenticated(IdentityBundle.from_payload(payload))
    except (RuntimeError, TypeError, ValueError) as error:
        LOGGER.warning("Discarding invalid session identity: %s", error)
        return ANONYMOUS


@dataclass
class SessionRecord:
    identity: Identity
    created: float | None

    @classmethod
    def from_fields(cls, identity: str | None, created: str | None) -> "SessionRecord":
        try:
            created_at = float(created) if created is not None else None
        except ValueError:
            created_at = None
        return cls(identity=decode_identity(identity), created=created_at)
