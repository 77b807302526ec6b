from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from starlette.applications import Starlette
from starlette.types import ASGIApp

from sessiongate.binder import SessionBinder
from sessiongate.pipeline import PipelineMiddleware

from .config import OidcConfig, build_oidc_config
from .flow import OidcFlowController


class OidcMiddleware(PipelineMiddleware):
    """Session binding followed by the OIDC sign-in flow."""

    def __init__(self, app: ASGIApp, config: OidcConfig) -> None:
        super().__init__(app, [SessionBinder(config.session), OidcFlowController(config)])
        self.config = config


def install_oidc(app: Starlette, overrides: Mapping[str, Any] | None = None) -> OidcConfig:
    # Validation runs here, before the middleware is registered.
    config = build_oidc_config(overrides)
    app.add_middleware(OidcMiddleware, config=config)
    return config
