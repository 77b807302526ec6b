from __future__ import annotations

import os
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from auth.middleware import install_oidc
from auth.models import Authenticated, SessionRecord
from sessiongate.constants import APP_VERSION, LOGGER
from sessiongate.env import (
    _get_env_int,
    is_production,
    load_env,
    oidc_overrides_from_env,
    setup_logging,
    validate_env,
)


async def health_route(request: Request) -> Response:
    del request
    return JSONResponse({"status": "ok", "version": APP_VERSION})


async def whoami_route(request: Request) -> Response:
    session: SessionRecord = request.state.session
    identity = session.identity
    if isinstance(identity, Authenticated):
        return JSONResponse(
            {
                "authenticated": True,
                "subject": identity.bundle.subject,
                "scopes": identity.bundle.scopes,
            }
        )
    return JSONResponse({"authenticated": False})


def create_app() -> Starlette:
    load_env()
    setup_logging()
    validate_env()

    overrides = oidc_overrides_from_env()
    store = overrides["session_store"]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await store.aclose()
        LOGGER.info("Session store closed")

    app = Starlette(
        routes=[
            Route("/health", health_route, methods=["GET"]),
            Route("/", whoami_route, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    config = install_oidc(app, overrides)
    LOGGER.info(
        "OIDC middleware installed issuer=%s auto_signin=%s production=%s",
        config.issuer,
        config.challenge.signin,
        is_production(),
    )
    return app


def main() -> None:
    import uvicorn

    host = os.getenv("APP_HOST", "127.0.0.1")
    port = _get_env_int("APP_PORT", 8000)
    app = create_app()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
