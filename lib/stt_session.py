from __future__ import annotations

from logging import Logger, getLogger
from typing import TYPE_CHECKING, Optional

from lib.stt_errors import PermanentError, ProtocolError
from lib.stt_events import ClientEvent, ServerEvent, encode, decode
from lib.stt_transport import MessageType, Transport

if TYPE_CHECKING:
    from lib.stt_client import ConnectOptions


class SttSession:
    """
    One live connection to the realtime STT service.

    The session owns its transport and holds no state besides it: no
    buffering, no retries. Writes go out in the order they are awaited.
    Reads must come from a single reader (the recognizer's read loop), a
    concurrent second read fails with PermanentError.

    Errors:
      - `send()` raises EncodeError before anything is written when the event is malformed.
      - `read_raw()` raises ProtocolError for non-text frames.
      - `read()` raises DecodeError for unknown or malformed payloads.
      - PermanentError from the transport (connection closed) passes through untouched.
    """

    def __init__(self, transport: Transport, *, options: Optional["ConnectOptions"] = None,
                 logger: Optional[Logger] = None) -> None:
        self._transport = transport
        self._logger = logger or getLogger(__name__)
        self._closed = False
        self._reading = False
        self.options = options

    @property
    def logger(self) -> Logger:
        return self._logger

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise PermanentError(RuntimeError("session is closed"), clean=True)

    async def send_raw(self, data: bytes) -> None:
        """Write one text frame."""
        self._ensure_open()
        await self._transport.write_message(MessageType.TEXT, data)

    async def send(self, event: ClientEvent) -> None:
        data = encode(event)
        await self.send_raw(data)

    async def read_raw(self) -> bytes:
        """
        Read exactly one frame, which must be a text frame.

        A second read while one is pending raises a (not clean) PermanentError.
        """
        self._ensure_open()
        if self._reading:
            raise PermanentError(RuntimeError("session already has a pending read"))
        self._reading = True
        try:
            message_type, data = await self._transport.read_message()
        finally:
            self._reading = False
        if message_type != MessageType.TEXT:
            raise ProtocolError(f"expected text message, got {message_type!r} ({len(data)} bytes)")
        return data

    async def read(self) -> ServerEvent:
        data = await self.read_raw()
        return decode(data)

    async def ping(self) -> None:
        self._ensure_open()
        await self._transport.ping()

    async def close(self) -> None:
        """
        Close the transport. Only the first call reaches the transport, later
        calls are no-ops.
        """
        if self._closed:
            self._logger.debug("[STT] session already closed.")
            return
        self._closed = True
        await self._transport.close()
        self._logger.debug("[STT] session closed.")

    async def __aenter__(self) -> "SttSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
