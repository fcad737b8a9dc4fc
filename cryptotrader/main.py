"""FastAPI application entry point.

    uvicorn cryptotrader.main:app
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cryptotrader.api import positions, system, trades
from cryptotrader.config import settings
from cryptotrader.utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    # ConfigurationError here aborts startup
    from cryptotrader.engine.controller import build_controller
    controller = build_controller(settings)
    app.state.controller = controller
    await controller.start()

    yield

    await controller.close()


app = FastAPI(
    title="Crypto Trader",
    description="Indicator-driven crypto trading controller with an ops API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system.router)
app.include_router(positions.router)
app.include_router(trades.router)
