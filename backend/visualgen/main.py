import os

from fastapi import FastAPI

from visualgen.api import batches, health, metrics, status
from visualgen.core import config
from visualgen.core.logging import logger, setup_file_logging
from visualgen.db import connection
from visualgen.services.factory import build_services

app = FastAPI(title="Visualgen Backend", version="0.1.0")

app.include_router(health.router)
app.include_router(status.router)
app.include_router(batches.router)
app.include_router(metrics.router)


@app.on_event("startup")
async def on_startup() -> None:
    config.ensure_dirs()
    setup_file_logging()
    if config.JOB_STORE != "memory":
        await connection.connect_db()
    app.state.services = build_services()
    await app.state.services.coordinator.recover_interrupted()
    missing = config.missing_credentials()
    if missing:
        logger.warning(f"missing credentials: {', '.join(missing)}")
    logger.info("backend started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
    await connection.close_db()
    logger.info("backend stopped")


def run() -> None:
    import uvicorn

    port = int(os.environ.get("BACKEND_PORT", "49671"))
    uvicorn.run(
        "visualgen.main:app",
        host="127.0.0.1",
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
