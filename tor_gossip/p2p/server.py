"""HTTP surfaces for a gossip node.

``create_app`` builds the onion-facing receive app (``POST /gossip``). The
control app from ``create_control_app`` lets a local application add and
ping peers, publish messages and stream events; bind it to localhost only.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from ..config import NodeConfig
from ..envelope import Envelope
from ..errors import InvalidAddressError, NodeNotStartedError, PeerUnreachableError
from .broadcast import Broadcast
from .node import GossipNode
from .transport import GOSSIP_PATH, TorTransport

log = logging.getLogger(__name__)


class AddressRequest(BaseModel):
    address: str = Field(min_length=1, max_length=512)


class PublishRequest(BaseModel):
    topic: str = Field(min_length=1, max_length=128)
    payload: str


class PeersResponse(BaseModel):
    address: str | None
    public_key: str | None
    peers: list[str]


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NodeNotStartedError)
    async def _not_started(request: Request, exc: NodeNotStartedError):
        return JSONResponse({"error": str(exc)}, status_code=503)

    @app.exception_handler(InvalidAddressError)
    async def _invalid_address(request: Request, exc: InvalidAddressError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(PeerUnreachableError)
    async def _unreachable(request: Request, exc: PeerUnreachableError):
        return JSONResponse({"error": str(exc)}, status_code=502)


# ------------------------------------------------------------------------------
# Receive app
# ------------------------------------------------------------------------------
def _lifespan(node: GossipNode, manage_node: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_node:
            await node.start()
        try:
            yield
        finally:
            if manage_node:
                await node.stop()

    return lifespan


def create_app(node: GossipNode, manage_node: bool = True) -> FastAPI:
    """Return the receive app; with *manage_node* its lifespan starts and stops *node*."""

    app = FastAPI(title="tor-gossip receiver", version="0.1.0", lifespan=_lifespan(node, manage_node))

    @app.post(GOSSIP_PATH)
    async def gossip(request: Request):
        body = await request.body()
        if not body:
            return JSONResponse({"error": "empty payload"}, status_code=400)
        # The ack never depends on whether the envelope verified.
        return JSONResponse(await node.on_envelope_received(body))

    @app.get("/health")
    async def health():
        return PlainTextResponse("Onion Alive")

    return app


# ------------------------------------------------------------------------------
# Control app
# ------------------------------------------------------------------------------
async def _stream(ws: WebSocket, channel: Broadcast, encode: Callable[[Any], Any]) -> None:
    # Subscribe before accepting so nothing published after the handshake is missed.
    sub = channel.subscribe(maxsize=1000)
    await ws.accept()

    async def pump():
        async for item in sub:
            await ws.send_json(encode(item))

    pump_task = asyncio.create_task(pump())
    try:
        # Inbound frames are ignored; the loop only waits for the client to go away.
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sub.close()
        await asyncio.gather(pump_task, return_exceptions=True)


def create_control_app(node: GossipNode, manage_node: bool = False) -> FastAPI:
    app = FastAPI(title="tor-gossip control", version="0.1.0", lifespan=_lifespan(node, manage_node))
    _install_error_handlers(app)

    @app.get("/peers", response_model=PeersResponse)
    async def list_peers() -> PeersResponse:
        return PeersResponse(address=node.address, public_key=node.public_key, peers=list(node.peers))

    @app.post("/peers")
    async def add_peer(body: AddressRequest):
        return {"added": node.add_peer(body.address)}

    @app.post("/peers/ping")
    async def ping_peer(body: AddressRequest):
        envelope = await node.ping_peer(body.address)
        return {"ok": True, "id": envelope.id}

    @app.post("/publish")
    async def publish(body: PublishRequest):
        envelope = await node.publish(body.topic, body.payload)
        return {"ok": True, "id": envelope.id}

    @app.websocket("/events/messages")
    async def message_events(ws: WebSocket):
        await _stream(ws, node.messages, Envelope.to_wire)

    @app.websocket("/events/logs")
    async def log_events(ws: WebSocket):
        await _stream(ws, node.logs, lambda line: {"log": line})

    return app


# ------------------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------------------
async def serve(config: NodeConfig) -> None:
    import uvicorn

    node = GossipNode(config, TorTransport(config))
    log.info("Receiving gossip on %s:%d, control API on 127.0.0.1:%d", config.host, config.port, config.control_port)
    servers = [
        uvicorn.Server(uvicorn.Config(create_app(node), host=config.host, port=config.port, log_level="info")),
        uvicorn.Server(
            uvicorn.Config(create_control_app(node), host="127.0.0.1", port=config.control_port, log_level="info")
        ),
    ]
    await asyncio.gather(*(server.serve() for server in servers))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    asyncio.run(serve(NodeConfig.from_env()))


if __name__ == "__main__":
    main()
