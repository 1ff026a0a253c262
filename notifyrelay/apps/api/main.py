from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request

from notifyrelay.apps.api.errors import register_exception_handlers
from notifyrelay.apps.api.response import API_VERSION
from notifyrelay.apps.api.routes.health import router as health_router
from notifyrelay.apps.api.routes.notifications import router as notifications_router
from notifyrelay.apps.api.routes.ops import router as ops_router
from notifyrelay.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="notifyrelay API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    register_exception_handlers(app)

    # Health stays reachable unversioned for load balancers.
    app.include_router(health_router, include_in_schema=False)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
