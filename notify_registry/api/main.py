import asyncio
import contextlib
import logging

from fastapi import FastAPI

from notify_registry.agents.audit_service import audit_runner
from notify_registry.agents.directory_feed import directory_feed
from notify_registry.api.routes.audit import router as audit_router
from notify_registry.api.routes.organizations import router as organizations_router
from notify_registry.api.routes.subscribers import router as subscribers_router

app = FastAPI(title="Notify Registry")
app.include_router(subscribers_router, prefix="/api/v1")
app.include_router(organizations_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO)
    app.state.directory_task = asyncio.create_task(directory_feed.run())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await directory_feed.stop()
    task: asyncio.Task[None] | None = getattr(app.state, "directory_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await audit_runner.shutdown()


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, object]:
    feed_health = directory_feed.health.payload()
    return {
        "status": "ok" if directory_feed.health.healthy else "degraded",
        "agents": [feed_health, audit_runner.health.payload()],
    }


@app.get("/ready", tags=["system"])
async def ready() -> dict[str, bool]:
    return {"ready": directory_feed.health.ready}
