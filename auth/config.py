from __future__ import annotations

import enum
import math
import urllib.parse
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from sessiongate.config import (
    SESSION_KEYS,
    ConfigurationError,
    SessionConfig,
    is_finite_number,
    merge_overrides,
    session_config_from_values,
    session_defaults,
    unknown_keys,
    validate_session_values,
)
from sessiongate.constants import FAVICON_PATH, LOGGER

from .keycloak import KeycloakClient

# Development-only placeholders; deployments must override all three.
DEFAULT_ISSUER = "https://invalid.keycloak.org/realms/master"
DEFAULT_CLIENT_ID = "invalid-client"
DEFAULT_CLIENT_SECRET = "invalid-secret"
DEFAULT_CHALLENGE_EXPIRE_IN = 600

FLOW_SECTIONS = ("signin", "signout")
FLOW_PATH_FIELDS = ("page", "endpoint", "callback")

OIDC_KEYS = SESSION_KEYS | frozenset(
    {
        "challenge",
        "challenge_expire_in",
        "signin",
        "signout",
        "issuer",
        "client_id",
        "client_secret",
        "identity_provider",
    }
)


class Route(enum.Enum):
    FAVICON = "favicon"
    SIGNIN_PAGE = "signin_page"
    SIGNIN_ENDPOINT = "signin_endpoint"
    SIGNIN_CALLBACK = "signin_callback"
    SIGNOUT_PAGE = "signout_page"
    SIGNOUT_ENDPOINT = "signout_endpoint"
    SIGNOUT_CALLBACK = "signout_callback"


@dataclass(frozen=True)
class FlowPaths:
    page: str
    endpoint: str
    callback: str


@dataclass(frozen=True)
class ChallengeOptions:
    signin: bool


@dataclass(frozen=True)
class OidcConfig:
    session: SessionConfig
    challenge: ChallengeOptions
    signin: FlowPaths
    signout: FlowPaths
    issuer: str
    client_id: str
    client_secret: str
    challenge_expire_in: int
    identity_provider: Callable[..., KeycloakClient]
    routes: Mapping[str, Route]

    def route_for(self, path: str) -> Route | None:
        return self.routes.get(path)

    def provider(self, redirect_uri: str) -> KeycloakClient:
        return self.identity_provider(
            self.issuer,
            self.client_id,
            self.client_secret,
            redirect_uri,
        )


def oidc_defaults() -> dict[str, Any]:
    values = session_defaults()
    values.update(
        {
            "challenge": {"signin": False},
            "challenge_expire_in": DEFAULT_CHALLENGE_EXPIRE_IN,
            "signin": {
                "page": "/account/signin",
                "endpoint": "/.oidc/signin",
                "callback": "/.oidc/signin/callback",
            },
            "signout": {
                "page": "/account/signout",
                "endpoint": "/.oidc/signout",
                "callback": "/.oidc/signout/callback",
            },
            "issuer": DEFAULT_ISSUER,
            "client_id": DEFAULT_CLIENT_ID,
            "client_secret": DEFAULT_CLIENT_SECRET,
            "identity_provider": KeycloakClient,
        }
    )
    return values


def _validate_flow_paths(values: Mapping[str, Any], section: str) -> list[str]:
    label = section.capitalize()
    paths = values.get(section)
    if paths is None:
        return [f"{label} configuration is missing"]
    if not isinstance(paths, Mapping):
        return [f"{label} configuration must be a mapping"]

    errors = []
    for name in FLOW_PATH_FIELDS:
        path = paths.get(name)
        if not isinstance(path, str) or not path:
            errors.append(f"{label} {name} is missing")
        elif not path.startswith("/"):
            errors.append(f"{label} {name} must be an absolute path")
    return errors


def _validate_distinct_paths(values: Mapping[str, Any]) -> list[str]:
    seen = {FAVICON_PATH}
    duplicates = []
    for section in FLOW_SECTIONS:
        paths = values.get(section)
        if not isinstance(paths, Mapping):
            continue
        for name in FLOW_PATH_FIELDS:
            path = paths.get(name)
            if not isinstance(path, str) or not path:
                continue
            if path in seen:
                duplicates.append(path)
            seen.add(path)
    return [f"Flow path is used more than once: {path}" for path in duplicates]


def validate_oidc_values(values: Mapping[str, Any]) -> list[str]:
    errors = validate_session_values(values)

    challenge = values.get("challenge")
    if challenge is None:
        errors.append("Challenge is missing")
    elif not isinstance(challenge, Mapping) or not isinstance(challenge.get("signin"), bool):
        errors.append("Signin challenge is missing")

    challenge_expire_in = values.get("challenge_expire_in")
    if not is_finite_number(challenge_expire_in) or challenge_expire_in <= 0:
        errors.append("challenge_expire_in must be a positive finite number (seconds)")

    for section in FLOW_SECTIONS:
        errors.extend(_validate_flow_paths(values, section))
    errors.extend(_validate_distinct_paths(values))

    issuer = values.get("issuer")
    if not isinstance(issuer, str) or not issuer:
        errors.append("Issuer is missing")
    else:
        parsed = urllib.parse.urlparse(issuer)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            errors.append("Issuer must be an absolute http(s) URL")

    if not isinstance(values.get("client_id"), str) or not values["client_id"]:
        errors.append("Client id is missing")
    if not isinstance(values.get("client_secret"), str) or not values["client_secret"]:
        errors.append("Client secret is missing")
    if not callable(values.get("identity_provider")):
        errors.append("Identity provider is missing")

    return errors


def build_route_table(signin: FlowPaths, signout: FlowPaths) -> Mapping[str, Route]:
    return MappingProxyType(
        {
            FAVICON_PATH: Route.FAVICON,
            signin.page: Route.SIGNIN_PAGE,
            signin.endpoint: Route.SIGNIN_ENDPOINT,
            signin.callback: Route.SIGNIN_CALLBACK,
            signout.page: Route.SIGNOUT_PAGE,
            signout.endpoint: Route.SIGNOUT_ENDPOINT,
            signout.callback: Route.SIGNOUT_CALLBACK,
        }
    )


def build_oidc_config(overrides: Mapping[str, Any] | None = None) -> OidcConfig:
    """Merge ``overrides`` onto fresh defaults and validate the result.

    Raises ``ConfigurationError`` listing every problem found, so a bad
    configuration stops the middleware from being installed at all.
    """
    values = merge_overrides(oidc_defaults(), overrides)
    errors = unknown_keys(values, OIDC_KEYS) + validate_oidc_values(values)
    if errors:
        LOGGER.error("Invalid oidc config: %s", errors)
        raise ConfigurationError("Invalid oidc config", errors)

    signin = FlowPaths(**{name: values["signin"][name] for name in FLOW_PATH_FIELDS})
    signout = FlowPaths(**{name: values["signout"][name] for name in FLOW_PATH_FIELDS})
    return OidcConfig(
        session=session_config_from_values(values),
        challenge=ChallengeOptions(signin=values["challenge"]["signin"]),
        signin=signin,
        signout=signout,
        issuer=values["issuer"],
        client_id=values["client_id"],
        client_secret=values["client_secret"],
        challenge_expire_in=math.ceil(values["challenge_expire_in"]),
        identity_provider=values["identity_provider"],
        routes=build_route_table(signin, signout),
    )
