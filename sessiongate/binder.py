from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone

from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from auth.models import SessionRecord

from .config import SessionConfig
from .constants import FAVICON_PATH, LOGGER, SESSION_FIELDS, session_key
from .pipeline import Interceptor, PipelineMiddleware
from .tokens import new_token_id


class SessionBinder(Interceptor):
    """Guarantees ``request.state.session_id`` names a live session record.

    A request whose cookie does not resolve to a stored record gets a fresh
    record and cookie. The cookie only reaches the server on the next request,
    so GET is bounced back to the same URL (303) and anything else is refused
    (405): state-changing requests need a session established by a prior GET.
    """

    def __init__(self, config: SessionConfig) -> None:
        self.config = config

    async def intercept(self, request: Request) -> Response | None:
        store = self.config.session_store

        if request.url.path == FAVICON_PATH:
            return None

        cookie_value = request.cookies.get(self.config.cookie.name)
        if cookie_value:
            key = session_key(cookie_value)
            if await store.exists(key):
                identity, created = await store.get_multiple(key, list(SESSION_FIELDS))
                request.state.session_id = cookie_value
                request.state.session = SessionRecord.from_fields(identity, created)
                return None

        session_id = await self._create_session()
        return self._establish_response(request, session_id)

    async def _create_session(self) -> str:
        config = self.config
        session_id = new_token_id(config.session_generator, config.session_hasher, config.size)
        key = session_key(session_id)

        await config.session_store.set_multiple(
            key,
            ["identity", json.dumps(None), "created", str(time.time())],
        )
        await config.session_store.expire(key, config.expire_in)
        LOGGER.info("Created session record ttl=%ss", config.expire_in)
        return session_id

    def _establish_response(self, request: Request, session_id: str) -> Response:
        if request.method == "GET":
            response: Response = RedirectResponse(url=str(request.url), status_code=303)
        else:
            LOGGER.info(
                "Rejecting %s %s without an established session",
                request.method,
                request.url.path,
            )
            response = Response(status_code=405)

        response.headers["Cache-Control"] = "no-store"
        response.set_cookie(
            self.config.cookie.name,
            session_id,
            expires=datetime.now(timezone.utc) + timedelta(seconds=self.config.expire_in),
            path="/",
            secure=self.config.cookie.secure,
            httponly=True,
            samesite="strict",
        )
        return response


class SessionMiddleware(PipelineMiddleware):
    def __init__(self, app: ASGIApp, config: SessionConfig) -> None:
        super().__init__(app, [SessionBinder(config)])
        self.config = config
