# Fulfillment Hub - transactional order fulfillment API
from __future__ import annotations
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from fulfillment_hub import __version__
from fulfillment_hub.settings import settings
from fulfillment_hub.database import (
    init_db, close_db, check_db_health, create_schema, get_session_factory,
)
from fulfillment_hub.services.fulfillment import FulfillmentConfig, FulfillmentOrchestrator
from fulfillment_hub.routers.orders import router as orders_router
from fulfillment_hub.routers.products import router as products_router

# ---------------------------------------------------------
# Logging setup
# ---------------------------------------------------------
from fulfillment_hub.logging_setup import setup_logging
setup_logging(settings)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Lifespan: Database init/cleanup
# ---------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await init_db()
    if settings.DB_CREATE_SCHEMA:
        await create_schema()
        logger.info("Database schema created")
    app.state.orchestrator = FulfillmentOrchestrator.from_session_factory(
        get_session_factory(),
        FulfillmentConfig.from_settings(settings),
    )
    logger.info("Fulfillment Hub started")
    yield
    # Shutdown
    app.state.orchestrator = None
    await close_db()
    logger.info("Fulfillment Hub stopped")

# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(
    title="Fulfillment Hub API",
    version=__version__,
    description="Atomic order fulfillment: stock reservation, order persistence, inventory audit",
    lifespan=lifespan,
)

app.include_router(orders_router)
app.include_router(products_router)


@app.get("/health")
async def health():
    db = await check_db_health()
    status_code = 200 if db["status"] == "healthy" else 503
    return JSONResponse(status_code=status_code, content=db)
