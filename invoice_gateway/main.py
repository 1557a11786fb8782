import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoice_gateway import __version__, config
from invoice_gateway.db import init_db
from invoice_gateway.routers.admin import router as admin_router
from invoice_gateway.routers.auth import router as auth_router
from invoice_gateway.routers.invoices import router as invoices_router
from invoice_gateway.routers.orders import router as orders_router
from invoice_gateway.square import SquareClient

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_square_client():
    if not config.SQUARE_ACCESS_TOKEN or not config.SQUARE_LOCATION_ID:
        logger.error("SQUARE_ACCESS_TOKEN / SQUARE_LOCATION_ID not set; invoice requests will fail")
        return None
    return SquareClient(config.SQUARE_ACCESS_TOKEN, config.SQUARE_LOCATION_ID)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.DATABASE_URL:
        init_db()
    else:
        logger.error("DATABASE_URL not set; skipping schema setup")

    app.state.square = build_square_client()
    logger.info(f"Invoice gateway {__version__} started (square env={config.SQUARE_ENVIRONMENT})")
    yield

    if app.state.square is not None:
        app.state.square.close()
    logger.info("Invoice gateway stopped")


app = FastAPI(title="Square Invoice Gateway", version=__version__, lifespan=lifespan)

app.include_router(invoices_router)
app.include_router(auth_router)
app.include_router(orders_router)
app.include_router(admin_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials="*" not in config.CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)


@app.get("/health")
def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("invoice_gateway.main:app", host="0.0.0.0", port=8000, log_level="info")
