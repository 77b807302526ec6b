from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp


class Interceptor(ABC):
    """One stage of the request pipeline.

    Returning a response ends the pipeline with it; returning ``None`` hands
    the request to the next stage, and after the last stage to the app.
    """

    @abstractmethod
    async def intercept(self, request: Request) -> Response | None:
        raise NotImplementedError


async def run_interceptors(
    interceptors: Sequence[Interceptor],
    request: Request,
    call_next: RequestResponseEndpoint,
) -> Response:
    for interceptor in interceptors:
        response = await interceptor.intercept(request)
        if response is not None:
            return response
    return await call_next(request)


class PipelineMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, interceptors: Sequence[Interceptor]) -> None:
        super().__init__(app)
        self.interceptors = tuple(interceptors)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        return await run_interceptors(self.interceptors, request, call_next)
