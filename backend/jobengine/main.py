import os

from fastapi import FastAPI

from jobengine.api import events, health, jobs, status
from jobengine.core.config import BACKEND_PORT, ensure_dirs
from jobengine.db.connection import close_db, connect_db
from jobengine.services.generation import close_adapter
from jobengine.services.jobs import shutdown_jobs
from jobengine.websocket.manager import manager

app = FastAPI(title="Job Engine", version="0.1.0")
app.include_router(health.router)
app.include_router(status.router)
app.include_router(jobs.router)
app.include_router(events.router)


@app.on_event("startup")
async def on_startup() -> None:
    ensure_dirs()
    await connect_db()
    await manager.emit_log("info", "backend started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await shutdown_jobs()
    await close_db()
    await close_adapter()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "jobengine.main:app",
        host=os.environ.get("BACKEND_HOST", "127.0.0.1"),
        port=BACKEND_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
