from __future__ import annotations

import base64
import hashlib
import secrets
import time
import urllib.parse
from dataclasses import dataclass

import httpx
import jwt


class IdentityProviderError(RuntimeError):
    pass


class OAuth2RequestError(IdentityProviderError):
    """The token endpoint answered with an OAuth2 error body."""

    def __init__(self, code: str, description: str | None = None) -> None:
        message = f"OAuth2 request failed: {code}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message)
        self.code = code
        self.description = description


class ProviderFetchError(IdentityProviderError):
    """The token endpoint could not be reached."""


class UnexpectedResponseError(IdentityProviderError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Unexpected token response with status {status_code}: {detail}")
        self.status_code = status_code


@dataclass
class OidcTokens:
    access_token: str
    id_token: str
    token_type: str
    expires_in: int
    expires_at: float
    scopes: list[str]
    refresh_token: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "OidcTokens":
        access_token = payload.get("access_token")
        id_token = payload.get("id_token")
        refresh_token = payload.get("refresh_token")
        token_type = payload.get("token_type", "Bearer")
        expires_in = payload.get("expires_in")
        scope = payload.get("scope", "")

        if not isinstance(access_token, str) or not access_token:
            raise UnexpectedResponseError(200, "Token response missing access_token.")
        if not isinstance(id_token, str) or not id_token:
            raise UnexpectedResponseError(200, "Token response missing id_token.")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise UnexpectedResponseError(200, "Token response refresh_token must be a string.")
        if not isinstance(expires_in, int):
            raise UnexpectedResponseError(200, "Token response missing expires_in.")
        if not isinstance(scope, str):
            raise UnexpectedResponseError(200, "Token response scope must be a string.")

        return cls(
            access_token=access_token,
            id_token=id_token,
            token_type=str(token_type),
            expires_in=expires_in,
            expires_at=time.time() + expires_in,
            scopes=scope.split(),
            refresh_token=refresh_token or None,
        )


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    while True:
        verifier = secrets.token_urlsafe(64)
        if 43 <= len(verifier) <= 128:
            return verifier


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def decode_jwt_payload(token: str) -> dict:
    """Read a JWT's claims without checking its signature."""
    return jwt.decode(token, options={"verify_signature": False})


class KeycloakClient:
    """Authorization Code + PKCE client for a single Keycloak realm.

    ``issuer`` is the realm URL, e.g. ``https://idp.example/realms/acme``.
    """

    def __init__(
        self,
        issuer: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._http_client = http_client

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/token"

    def create_authorization_url(self, state: str, code_verifier: str, scopes: list[str]) -> str:
        query = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "code_challenge_method": "S256",
            "code_challenge": generate_code_challenge(code_verifier),
        }
        if scopes:
            query["scope"] = " ".join(scopes)
        return f"{self.authorization_endpoint}?{urllib.parse.urlencode(query)}"

    async def validate_authorization_code(self, code: str, code_verifier: str) -> OidcTokens:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
            }
        )

    async def _token_request(self, payload: dict[str, str]) -> OidcTokens:
        own_client = self._http_client is None
        http_client = self._http_client or httpx.AsyncClient()

        try:
            response = await http_client.post(
                self.token_endpoint,
                data=payload,
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as error:
            raise ProviderFetchError(f"Token request to {self.token_endpoint} failed: {error}") from error
        finally:
            if own_client:
                await http_client.aclose()

        try:
            body = response.json()
        except ValueError:
            raise UnexpectedResponseError(response.status_code, response.text) from None

        if response.status_code in (400, 401) and isinstance(body, dict) and "error" in body:
            raise OAuth2RequestError(str(body["error"]), body.get("error_description"))
        if response.status_code != 200 or not isinstance(body, dict):
            raise UnexpectedResponseError(response.status_code, response.text)

        return OidcTokens.from_payload(body)
