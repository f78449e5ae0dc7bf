"""Outbound transports used by the gossip engine.

A transport bootstraps the node's own onion address and delivers serialised
envelopes to one peer per call. :class:`TorTransport` posts over the Tor
SOCKS proxy; :class:`MemoryNetwork` wires nodes together in-process for
tests and local simulations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import httpx

from ..config import NodeConfig
from ..errors import TransportError

log = logging.getLogger(__name__)

GOSSIP_PATH = "/gossip"


class Transport(Protocol):
    async def start(self) -> str:
        """Bootstrap the transport and return the node's own onion address."""

    async def send_envelope(self, address: str, body: bytes) -> int:
        """Deliver *body* to *address*; return the HTTP status code."""

    async def stop(self) -> None:
        ...


class TorTransport:
    """
    HTTP client tunnelled through the Tor SOCKS proxy.

    The own address is ``config.onion_address`` when set, otherwise the
    contents of the hidden service ``hostname`` file, polled until Tor writes
    it or ``config.bootstrap_timeout`` expires.
    """

    def __init__(self, config: NodeConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> str:
        address = await self._own_address()
        if not self.config.proxy:
            log.warning("No PROXY configured. IP addresses may be leaked. "
                        "Set PROXY=socks5://127.0.0.1:9050 for Tor.")
        timeout = httpx.Timeout(self.config.request_timeout, connect=self.config.connect_timeout)
        self._client = httpx.AsyncClient(proxy=self.config.proxy, timeout=timeout)
        return address

    async def _own_address(self) -> str:
        if self.config.onion_address:
            return self.config.onion_address
        if not self.config.hostname_file:
            raise TransportError("Set ONION_ADDRESS or TOR_HOSTNAME_FILE to find the onion address")
        path = Path(self.config.hostname_file)
        deadline = time.monotonic() + self.config.bootstrap_timeout
        while True:
            if path.exists():
                hostname = path.read_text(encoding="utf-8").strip()
                if hostname:
                    return hostname
            if time.monotonic() >= deadline:
                raise TransportError(f"Timed out waiting for onion hostname in {path}")
            await asyncio.sleep(0.5)

    async def send_envelope(self, address: str, body: bytes) -> int:
        client = self._client
        if client is None:
            raise TransportError("transport is not running")
        try:
            response = await client.post(
                f"http://{address}{GOSSIP_PATH}",
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        return response.status_code

    async def stop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


Handler = Callable[[bytes], Awaitable[object]]


class MemoryNetwork:
    """In-process network: addresses map straight to inbound handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        self.unreachable: Set[str] = set()
        self.statuses: Dict[str, int] = {}
        self.sent: List[Tuple[str, str, bytes]] = []

    def transport(self, address: str) -> "MemoryTransport":
        return MemoryTransport(self, address)

    def listen(self, address: str, handler: Handler) -> None:
        """Route envelopes for *address* to *handler* (e.g. ``node.on_envelope_received``)."""

        self._handlers[address] = handler

    def sent_to(self, address: str) -> List[bytes]:
        return [body for _, dest, body in self.sent if dest == address]

    async def deliver(self, source: str, address: str, body: bytes) -> int:
        self.sent.append((source, address, body))
        if address in self.unreachable:
            raise TransportError(f"no route to {address}")
        if address in self.statuses:
            return self.statuses[address]
        handler = self._handlers.get(address)
        if handler is None:
            raise TransportError(f"no route to {address}")
        await handler(body)
        return 200


class MemoryTransport:
    def __init__(self, network: MemoryNetwork, address: str):
        self.network = network
        self.address = address
        self.running = False

    async def start(self) -> str:
        self.running = True
        return self.address

    async def send_envelope(self, address: str, body: bytes) -> int:
        if not self.running:
            raise TransportError("transport is not running")
        return await self.network.deliver(self.address, address, body)

    async def stop(self) -> None:
        self.running = False


__all__ = ["Transport", "TorTransport", "MemoryNetwork", "MemoryTransport", "GOSSIP_PATH"]
