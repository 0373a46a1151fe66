"""OpenVibe relay server.

Exposes:
  WS   /register?id=<device>   — slave (device) connection
  WS   /pair?id=<device>       — master (controller) connection
  GET  /health                 — liveness check + per-device diagnostics

Start with::

    python -m openvibe.server
    # or
    uvicorn openvibe.server:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket
from pydantic import BaseModel, Field

from openvibe import __version__
from openvibe.config import RelayConfig
from openvibe.errors import MissingIdentifier
from openvibe.registry import Registry
from openvibe.session import MasterSession, SlaveSession
from openvibe.transport import WebSocketTransport

logger = logging.getLogger(__name__)

router = APIRouter()


# ──────────────────────────────────────────────────────────────────
# Response models
# ──────────────────────────────────────────────────────────────────

class GroupStats(BaseModel):
    slave: bool
    masters: int


class HealthResponse(BaseModel):
    status: str = "ok"
    groups: dict[str, GroupStats] = Field(default_factory=dict)


# ──────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    registry: Registry = request.app.state.registry
    return HealthResponse(groups=registry.stats())


@router.websocket("/register")
async def register_slave(
    websocket: WebSocket,
    device_id: str | None = Query(default=None, alias="id"),
):
    if not await _require_id(websocket, device_id, "register"):
        return
    registry: Registry = websocket.app.state.registry
    session = SlaveSession(WebSocketTransport(websocket), device_id, registry)
    await session.run()


@router.websocket("/pair")
async def pair_master(
    websocket: WebSocket,
    device_id: str | None = Query(default=None, alias="id"),
):
    if not await _require_id(websocket, device_id, "pair"):
        return
    registry: Registry = websocket.app.state.registry
    session = MasterSession(WebSocketTransport(websocket), device_id, registry)
    await session.run()


async def _require_id(websocket: WebSocket, device_id: str | None, route: str) -> bool:
    """Reject the handshake (HTTP 403 on the wire) when ``id`` is missing."""
    if device_id:
        return True
    error = MissingIdentifier()
    logger.warning("Rejected /%s from %s: %s", route, websocket.client, error)
    await websocket.close(code=error.close_code, reason=error.reason)
    return False


# ──────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────

def create_app(config: RelayConfig | None = None) -> FastAPI:
    """Build the relay app with its own registry."""
    config = config or RelayConfig.from_env()
    registry = Registry(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await registry.shutdown()

    app = FastAPI(title="OpenVibe Relay", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.include_router(router)
    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    config = RelayConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("WebSocket server starting on %s:%d", config.host, config.port)
    uvicorn.run(create_app(config), host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
