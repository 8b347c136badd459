"""FastAPI server for the AI chat and index endpoints."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from papergrid import config
from papergrid.api import routes

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Initializing services (data dir %s)...", config.DATA_DIR)
    t0 = time.perf_counter()
    services = routes.build_services()
    await services.tasks.init()
    routes.set_services(services)
    logger.info("Services ready (%.2fs)", time.perf_counter() - t0)
    try:
        yield
    finally:
        await services.tasks.shutdown()
        routes.set_services(None)
        services.store.close()
        logger.info("Services stopped")


app = FastAPI(title="Papergrid", description="Blog AI assistant service", lifespan=lifespan)

# CORS for the admin frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes.router)


def main() -> None:
    import uvicorn

    uvicorn.run("papergrid.api.server:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
