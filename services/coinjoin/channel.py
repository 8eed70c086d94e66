# services/coinjoin/channel.py
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, Union
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from services.errors import ConnectionFailure, ErrorCode

LOG = logging.getLogger("coinjoin.channel")
LOG.addHandler(logging.NullHandler())

IP_PRIVACY_WARNING = (
    "Your IP address may be visible to the CoinJoin coordinator. "
    "For maximum privacy, consider using Tor or a trusted VPN."
)


class CoordinationChannel(Protocol):
    async def send(self, message: Dict[str, Any]) -> None: ...

    async def receive(self) -> str: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[], Awaitable[CoordinationChannel]]


@dataclass(frozen=True)
class IpPrivacy:
    likely_protected: bool
    warning: Optional[str] = None


def check_ip_privacy(server_url: str) -> IpPrivacy:
    """Best-effort: only .onion hosts are treated as hiding the client IP."""
    host = urlparse(server_url).hostname or ""
    if host.endswith(".onion"):
        return IpPrivacy(True)
    return IpPrivacy(False, IP_PRIVACY_WARNING)


# ===== websocket transport =====
class WebSocketChannel:
    def __init__(self, ws) -> None:
        self._ws = ws

    @classmethod
    async def connect(cls, url: str, open_timeout: float = 10.0) -> "WebSocketChannel":
        privacy = check_ip_privacy(url)
        if not privacy.likely_protected:
            LOG.warning(privacy.warning)
        try:
            ws = await websockets.connect(url, open_timeout=open_timeout)
        except InvalidStatus as e:
            status = e.response.status_code
            if status == 429:
                raise ConnectionFailure("coordinator rate limited the connection", code=ErrorCode.RATE_LIMITED) from e
            raise ConnectionFailure(f"coordinator rejected the connection (HTTP {status})") from e
        except asyncio.TimeoutError as e:
            raise ConnectionFailure("timed out connecting to coordinator", code=ErrorCode.CONNECTION_TIMEOUT) from e
        except (OSError, WebSocketException) as e:
            raise ConnectionFailure(f"failed to connect to coordinator ({type(e).__name__})") from e
        return cls(ws)

    async def send(self, message: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise ConnectionFailure("connection closed while sending", code=ErrorCode.CONNECTION_CLOSED) from e

    async def receive(self) -> str:
        try:
            frame = await self._ws.recv()
        except ConnectionClosed as e:
            raise ConnectionFailure("connection closed by coordinator", code=ErrorCode.CONNECTION_CLOSED) from e
        return frame.decode() if isinstance(frame, bytes) else frame

    async def close(self) -> None:
        await self._ws.close()


def websocket_factory(url: str) -> ChannelFactory:
    async def _open() -> CoordinationChannel:
        return await WebSocketChannel.connect(url)

    return _open


# ===== in-process transport =====
class MemoryChannel:
    """One end of an in-process duplex pipe carrying JSON text frames."""

    def __init__(self, inbox: "asyncio.Queue[Union[str, None]]", outbox: "asyncio.Queue[Union[str, None]]") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self.closed = False

    @classmethod
    def pair(cls) -> Tuple["MemoryChannel", "MemoryChannel"]:
        a: asyncio.Queue = asyncio.Queue()
        b: asyncio.Queue = asyncio.Queue()
        return cls(a, b), cls(b, a)

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionFailure("channel closed", code=ErrorCode.CONNECTION_CLOSED)
        await self._outbox.put(json.dumps(message))

    async def send_raw(self, frame: str) -> None:
        await self._outbox.put(frame)

    async def receive(self) -> str:
        if self.closed:
            raise ConnectionFailure("channel closed", code=ErrorCode.CONNECTION_CLOSED)
        frame = await self._inbox.get()
        if frame is None:
            self.closed = True
            raise ConnectionFailure("peer closed the channel", code=ErrorCode.CONNECTION_CLOSED)
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._outbox.put(None)


__all__ = [
    "CoordinationChannel",
    "ChannelFactory",
    "IpPrivacy",
    "IP_PRIVACY_WARNING",
    "check_ip_privacy",
    "WebSocketChannel",
    "websocket_factory",
    "MemoryChannel",
]
