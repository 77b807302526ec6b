from __future__ import annotations

import jwt
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from sessiongate.constants import LOGGER, challenge_key, session_key
from sessiongate.pipeline import Interceptor
from sessiongate.tokens import new_token_id

from . import keycloak
from .config import OidcConfig, Route
from .models import (
    ANONYMOUS,
    Authenticated,
    Challenge,
    IdentityBundle,
    decode_identity,
    serialize_identity,
)
from .urls import append_query_params, resolve_redirect_uri, site_origin

DEFAULT_SCOPES = ["openid", "profile"]

PASS_THROUGH_ROUTES = frozenset(
    {
        Route.FAVICON,
        Route.SIGNIN_PAGE,
        Route.SIGNOUT_PAGE,
        Route.SIGNOUT_ENDPOINT,
        Route.SIGNOUT_CALLBACK,
    }
)


class OidcFlowController(Interceptor):
    """Lets only authenticated sessions through, except on the flow's own paths.

    Runs after ``SessionBinder``. An anonymous request is dispatched on its
    path: the sign-in endpoint starts an Authorization Code + PKCE challenge,
    the callback completes it, and anything else is either passed through or,
    with automatic challenge on, redirected into sign-in.
    """

    def __init__(self, config: OidcConfig) -> None:
        self.config = config
        self.store = config.session.session_store

    async def intercept(self, request: Request) -> Response | None:
        session_id = getattr(request.state, "session_id", None)
        if not session_id:
            return None

        if await self._load_identity(session_id):
            return None

        route = self.config.route_for(request.url.path)
        if route in PASS_THROUGH_ROUTES:
            return None
        if route is Route.SIGNIN_ENDPOINT:
            return await self._handle_signin_endpoint(request, session_id)
        if route is Route.SIGNIN_CALLBACK:
            return await self._handle_signin_callback(request, session_id)

        if self.config.challenge.signin:
            location = append_query_params(
                self.config.signin.endpoint,
                {"redirect_uri": str(request.url)},
            )
            return RedirectResponse(url=location, status_code=307)

        return None

    async def _load_identity(self, session_id: str) -> bool:
        [identity_json] = await self.store.get_multiple(session_key(session_id), ["identity"])
        return isinstance(decode_identity(identity_json), Authenticated)

    # -- sign-in ---------------------------------------------------------------

    async def _handle_signin_endpoint(self, request: Request, session_id: str) -> Response | None:
        if await self._load_identity(session_id):
            return None

        config = self.config
        origin = site_origin(str(request.url))
        original_redirect_uri = resolve_redirect_uri(
            request.query_params.get("redirect_uri"),
            origin,
        )

        challenge_id = new_token_id(
            config.session.session_generator,
            config.session.session_hasher,
            config.session.size,
        )
        redirect_uri = append_query_params(
            f"{origin}{config.signin.callback}",
            {"challenge": challenge_id},
        )
        challenge = Challenge(
            state=keycloak.generate_state(),
            code_verifier=keycloak.generate_code_verifier(),
            original_redirect_uri=original_redirect_uri,
            redirect_uri=redirect_uri,
            scopes=list(DEFAULT_SCOPES),
        )

        key = challenge_key(challenge_id)
        await self.store.set_single(key, challenge.to_json())
        await self.store.expire(key, config.challenge_expire_in)

        provider = config.provider(redirect_uri)
        authorization_url = provider.create_authorization_url(
            challenge.state,
            challenge.code_verifier,
            challenge.scopes,
        )
        LOGGER.info("Sign-in challenge created ttl=%ss", config.challenge_expire_in)
        return RedirectResponse(url=authorization_url, status_code=307)

    async def _handle_signin_callback(self, request: Request, session_id: str) -> Response:
        params = request.query_params
        challenge_id = params.get("challenge")
        if not challenge_id:
            return self._error("invalid_challenge")

        # Consumed on first read; a replayed or concurrent callback finds nothing.
        challenge_json = await self.store.pop_single(challenge_key(challenge_id))
        if challenge_json is None:
            return self._error("invalid_challenge")

        try:
            challenge = Challenge.from_json(challenge_json)
        except (RuntimeError, ValueError) as error:
            LOGGER.warning("Discarding unreadable sign-in challenge: %s", error)
            return self._error("invalid_challenge")

        validation_errors = []
        if params.get("state") != challenge.state:
            validation_errors.append("State mismatched")
        if params.get("iss") != self.config.issuer:
            validation_errors.append("Issuer mismatched")

        if validation_errors:
            LOGGER.warning("Rejected sign-in callback: %s", validation_errors)
            return self._error("invalid_callback")

        try:
            bundle = await self._exchange(challenge, params.get("code"), params.get("session_state"))
        except (keycloak.IdentityProviderError, jwt.PyJWTError) as error:
            LOGGER.warning("Sign-in code exchange failed: %s", error)
            await self.store.set_multiple(
                session_key(session_id),
                ["identity", serialize_identity(ANONYMOUS)],
            )
            return Response(status_code=400)

        await self.store.set_multiple(
            session_key(session_id),
            ["identity", serialize_identity(Authenticated(bundle))],
        )
        LOGGER.info("Sign-in completed subject=%s", bundle.subject)
        return RedirectResponse(url=challenge.original_redirect_uri, status_code=307)

    async def _exchange(
        self,
        challenge: Challenge,
        code: str | None,
        session_state: str | None,
    ) -> IdentityBundle:
        if not code:
            raise keycloak.IdentityProviderError("Callback carried no authorization code.")

        provider = self.config.provider(challenge.redirect_uri)
        tokens = await provider.validate_authorization_code(code, challenge.code_verifier)

        return IdentityBundle(
            access_token_raw=tokens.access_token,
            access_token_expires_at=tokens.expires_at,
            access_token_expires_in_seconds=tokens.expires_in,
            id_token_raw=tokens.id_token,
            token_type=tokens.token_type,
            scopes=tokens.scopes,
            access_token=keycloak.decode_jwt_payload(tokens.access_token),
            id_token=keycloak.decode_jwt_payload(tokens.id_token),
            refresh_token_raw=tokens.refresh_token,
            refresh_token=(
                keycloak.decode_jwt_payload(tokens.refresh_token)
                if tokens.refresh_token
                else None
            ),
            session_state=session_state,
            validation_errors=[],
        )

    def _error(self, code: str) -> Response:
        return JSONResponse({"error": code}, status_code=400)
