from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skillgate.api.routes_local import router as local_router
from skillgate.bootstrap import build_execution_registry
from skillgate.core.config import get_settings
from skillgate.core.errors import SkillgateError
from skillgate.core.logging import configure_logging
from skillgate.hub.routes import router as hub_router
from skillgate.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title="Skillgate")


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_execution_registry(settings)
    logger.info("skillgate ready: env=%s hub=%s", settings.env, settings.hub_base_url)


@app.on_event("shutdown")
def on_shutdown() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None and runtime.signing is not None:
        runtime.signing.release()


@app.exception_handler(SkillgateError)
async def skillgate_error_handler(_: Request, exc: SkillgateError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(hub_router)
app.include_router(local_router)
