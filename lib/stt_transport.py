"""
Full-duplex message transport consumed by ``SttSession``.

``Transport`` and ``Dialer`` are structural protocols (typing.Protocol), any
object with these coroutines works, e.g. the in-memory fake used in tests.

The default implementation sits on top of the ``websockets`` client. It
translates a closed connection into ``PermanentError`` so the recognizer's
read loop stops; every other failure is left as is.
"""
from __future__ import annotations

import asyncio
from enum import IntEnum
from logging import getLogger
from typing import Mapping, Protocol, Tuple, Union

from websockets import connect, ClientConnection, ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidURI

from config import (
    STT_WS_OPEN_TIMEOUT_S,
    STT_WS_PING_INTERVAL_S,
    STT_WS_PING_TIMEOUT_S,
    STT_WS_CLOSE_TIMEOUT_S,
    STT_WS_MAX_QUEUE,
)
from lib.stt_errors import DialError, PermanentError


logger = getLogger(__name__)


class MessageType(IntEnum):
    """Frame types, values follow the websocket opcodes."""
    TEXT = 1
    BINARY = 2


class Transport(Protocol):
    async def read_message(self) -> Tuple[MessageType, bytes]: ...
    async def write_message(self, message_type: MessageType, data: bytes) -> None: ...
    async def ping(self) -> None: ...
    async def close(self) -> None: ...


class Dialer(Protocol):
    async def dial(self, uri: str, headers: Mapping[str, str]) -> Transport: ...


def _permanent(e: ConnectionClosed) -> PermanentError:
    return PermanentError(e, clean=isinstance(e, ConnectionClosedOK))


class WebsocketsTransport:
    """Transport over an open ``websockets`` client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws
        self._closed = False

    async def read_message(self) -> Tuple[MessageType, bytes]:
        try:
            msg: Union[str, bytes] = await self._ws.recv()
        except ConnectionClosed as e:
            raise _permanent(e) from e
        if isinstance(msg, str):
            return MessageType.TEXT, msg.encode("utf-8")
        return MessageType.BINARY, bytes(msg)

    async def write_message(self, message_type: MessageType, data: bytes) -> None:
        # websockets picks the frame opcode from the python type
        frame: Union[str, bytes] = data.decode("utf-8") if message_type == MessageType.TEXT else data
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise _permanent(e) from e

    async def ping(self) -> None:
        try:
            pong_waiter = await self._ws.ping()
            await pong_waiter
        except ConnectionClosed as e:
            raise _permanent(e) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()


class WebsocketsDialer:
    """Dials ``wss://`` URLs with the ``websockets`` client."""

    def __init__(
            self,
            *,
            open_timeout: float = STT_WS_OPEN_TIMEOUT_S,
            ping_interval: float = STT_WS_PING_INTERVAL_S,
            ping_timeout: float = STT_WS_PING_TIMEOUT_S,
            close_timeout: float = STT_WS_CLOSE_TIMEOUT_S,
            max_queue: int = STT_WS_MAX_QUEUE,
    ) -> None:
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.close_timeout = close_timeout
        self.max_queue = max_queue

    async def dial(self, uri: str, headers: Mapping[str, str]) -> WebsocketsTransport:
        # Connect with an outer timeout too, the handshake alone can hang on a bad network.
        try:
            ws = await asyncio.wait_for(
                connect(
                    uri,
                    additional_headers=dict(headers),
                    open_timeout=self.open_timeout,
                    ping_interval=self.ping_interval,
                    ping_timeout=self.ping_timeout,
                    close_timeout=self.close_timeout,
                    max_queue=self.max_queue,
                ),
                timeout=self.open_timeout + 5.0,
            )
        except asyncio.TimeoutError as e:
            raise DialError(f"WebSocket connection timed out after {self.open_timeout:.0f}s") from e
        except (InvalidURI, InvalidHandshake, OSError) as e:
            raise DialError(f"WebSocket connection failed: {e}") from e
        logger.debug("[STT] WebSocket connected.")
        return WebsocketsTransport(ws)
