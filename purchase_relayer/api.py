"""
Read-only HTTP endpoint for the relay log.

Provides:
- GET /tx-log  (relay log JSON, {} when unavailable)
- GET /health
"""

from typing import Optional

import uvicorn
import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .config import Settings
from .txlog import RelayLog

logger = structlog.get_logger()

_settings = Settings()


def get_settings() -> Settings:
    return _settings


def get_relay_log(settings: Settings = Depends(get_settings)) -> RelayLog:
    return RelayLog(settings.tx_log_path)


class HealthResponse(BaseModel):
    status: str
    version: str
    entries: int


app = FastAPI(
    title="Purchase Relayer Log",
    description="Read-only view of relayed payouts",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/tx-log")
async def tx_log(relay_log: RelayLog = Depends(get_relay_log)) -> dict:
    """Return the relay log document."""
    return relay_log.read()


@app.get("/health", response_model=HealthResponse)
async def health(relay_log: RelayLog = Depends(get_relay_log)) -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, entries=len(relay_log.read()))


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the log server."""
    settings = get_settings()
    host = host or settings.log_host
    port = port or settings.log_port
    logger.info("log_server_starting", host=host, port=port, path=settings.tx_log_path)
    uvicorn.run(app, host=host, port=port)
