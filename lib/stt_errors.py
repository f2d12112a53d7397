"""
Error taxonomy of the realtime STT session.

The read loop of ``Recognizer`` only cares about one split: ``PermanentError``
ends the loop, anything else is transient (logged and the read is retried).

    SttError
     +-- DialError                  connect failed, no retry
     +-- EncodeError                outbound event is malformed, nothing was written
     +-- ProtocolError              frame of unexpected transport type (transient)
     +-- DecodeError                payload is not a known server event (transient)
     +-- PermanentError             wraps the cause that killed the session
     +-- ServerError                server sent an error-family event
     +-- RecognizerCancelledError   external cancel signal observed
     +-- RecognizerStateError       invalid lifecycle transition
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lib.stt_events import TranscriptionErrorEvent


class SttError(Exception):
    """Base class of all errors raised by the STT client."""


class DialError(SttError):
    """The connection to the STT service could not be established."""


class EncodeError(SttError):
    """A client event could not be serialized."""


class ProtocolError(SttError):
    """A frame arrived with a transport type other than the expected one."""


class DecodeError(SttError):
    """An inbound payload does not match any known server event."""


class PermanentError(SttError):
    """
    Marks `cause` as fatal for the session.

    `clean` is True when the connection ended with a normal close handshake
    (either side closed it on purpose), False for abnormal termination.
    """

    def __init__(self, cause: BaseException, *, clean: bool = False) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.clean = clean

    def __repr__(self) -> str:
        return f"PermanentError({self.cause!r}, clean={self.clean})"


class ServerError(SttError):
    """The server reported an error (auth_error, quota_exceeded, ...)."""

    def __init__(self, event: "TranscriptionErrorEvent") -> None:
        super().__init__(f"{event.message_type.value}: {event.error}")
        self.event = event

    @property
    def error(self) -> str:
        return self.event.error


class RecognizerCancelledError(SttError):
    """The recognizer's cancel signal was set while the read loop was running."""


class RecognizerStateError(SttError):
    """Operation not allowed in the current recognizer state."""
