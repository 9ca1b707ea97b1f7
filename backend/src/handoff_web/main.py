from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router, socket_router
from .config import Settings, get_settings, runtime_secret_issues
from .runtime import HandoffRuntime

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, runtime: HandoffRuntime | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("handoff_web").setLevel(settings.log_level)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: use CHANNEL_SENDER_TYPE=stub / BOT_CLIENT_TYPE=stub for local runs "
                + "or set the required integration secrets."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    handoff_runtime = runtime or HandoffRuntime.build(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await handoff_runtime.start()
        try:
            yield
        finally:
            await handoff_runtime.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = handoff_runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(socket_router)
    return app


app = create_app()
