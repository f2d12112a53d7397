"""
Wire events of the ElevenLabs realtime speech-to-text protocol.

Every message is a JSON object discriminated by its ``message_type`` field.

Client -> server
----------------
Only one event exists, ``input_audio_chunk``::

    {"message_type": "input_audio_chunk", "audio_base_64": "...", "commit": false,
     "sample_rate": 16000, "previous_txt": "..."}

``previous_txt`` is omitted when empty. The server only accepts it together
with the very first chunk of a session (not validated here).

Server -> client
----------------
``session_started``, ``partial_transcript``, ``committed_transcript``,
``committed_transcript_with_timestamps`` and fourteen error types that all
share one shape (``{"message_type": "...", "error": "..."}``) and decode to
``TranscriptionErrorEvent``.

``encode()`` / ``decode()`` are pure: no I/O, no logging.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from json import loads, dumps
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from lib.stt_errors import DecodeError, EncodeError


class ClientEventType(str, Enum):
    """Discriminators of events sent by the client."""

    INPUT_AUDIO_CHUNK = "input_audio_chunk"


class ServerEventType(str, Enum):
    """Discriminators of events sent by the server."""

    SESSION_STARTED = "session_started"
    PARTIAL_TRANSCRIPT = "partial_transcript"
    COMMITTED_TRANSCRIPT = "committed_transcript"
    COMMITTED_TRANSCRIPT_WITH_TIMESTAMPS = "committed_transcript_with_timestamps"

    # error family
    ERROR = "error"
    AUTH_ERROR = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    COMMIT_THROTTLED = "commit_throttled"
    UNACCEPTED_TERMS = "unaccepted_terms"
    RATE_LIMITED = "rate_limited"
    QUEUE_OVERFLOW = "queue_overflow"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    SESSION_TIME_LIMIT_EXCEEDED = "session_time_limit_exceeded"
    INPUT_ERROR = "input_error"
    CHUNK_SIZE_EXCEEDED = "chunk_size_exceeded"
    INSUFFICIENT_AUDIO_ACTIVITY = "insufficient_audio_activity"
    TRANSCRIBER_ERROR = "transcriber_error"
    INVALID_REQUEST = "invalid_request"


ERROR_EVENT_TYPES = frozenset({
    ServerEventType.ERROR,
    ServerEventType.AUTH_ERROR,
    ServerEventType.QUOTA_EXCEEDED,
    ServerEventType.COMMIT_THROTTLED,
    ServerEventType.UNACCEPTED_TERMS,
    ServerEventType.RATE_LIMITED,
    ServerEventType.QUEUE_OVERFLOW,
    ServerEventType.RESOURCE_EXHAUSTED,
    ServerEventType.SESSION_TIME_LIMIT_EXCEEDED,
    ServerEventType.INPUT_ERROR,
    ServerEventType.CHUNK_SIZE_EXCEEDED,
    ServerEventType.INSUFFICIENT_AUDIO_ACTIVITY,
    ServerEventType.TRANSCRIBER_ERROR,
    ServerEventType.INVALID_REQUEST,
})


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

_STR = (str,)
_BOOL = (bool,)
_INT = (int,)
_NUMBER = (int, float)

_MISSING = object()


def _field(data: Mapping[str, Any], key: str, types: Tuple[type, ...], *, default: Any = _MISSING,
           where: str = "") -> Any:
    """Return data[key] if it has one of `types`; `default` when missing/null (required if no default)."""
    value = data.get(key)
    if value is None:
        if default is _MISSING:
            raise DecodeError(f"{where}: missing field {key!r}")
        return default
    # bool is an int subclass, JSON true must not pass as a number
    if isinstance(value, bool) and bool not in types:
        raise DecodeError(f"{where}: field {key!r} must not be a boolean")
    if not isinstance(value, types):
        raise DecodeError(f"{where}: field {key!r} has unexpected type {type(value).__name__}")
    return value


def _load_object(data: Union[bytes, bytearray, str]) -> Dict[str, Any]:
    try:
        payload = loads(data)
    except (ValueError, TypeError) as e:  # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise DecodeError(f"payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecodeError(f"payload is not a JSON object: {type(payload).__name__}")
    return payload


# ---------------------------------------------------------------------------
# Client events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InputAudioChunkEvent:
    """
    One chunk of audio, or a commit marker.

    Attributes:
        audio_base_64: Base64 encoded audio. Must be non-empty unless `commit` is set.
        commit: Ask the server to finalize the current segment (manual commit strategy).
        sample_rate: Sample rate of the audio in Hz.
        previous_txt: Optional text context, accepted on the first chunk of a session only.
    """
    audio_base_64: str = ""
    commit: bool = False
    sample_rate: int = 16000
    previous_txt: str = ""
    message_type: ClientEventType = field(default=ClientEventType.INPUT_AUDIO_CHUNK, init=False)

    @classmethod
    def from_pcm(cls, pcm: bytes, sample_rate: int, previous_txt: str = "") -> "InputAudioChunkEvent":
        return cls(
            audio_base_64=base64.b64encode(pcm).decode("ascii"),
            commit=False,
            sample_rate=sample_rate,
            previous_txt=previous_txt,
        )

    @classmethod
    def commit_only(cls, sample_rate: int) -> "InputAudioChunkEvent":
        return cls(audio_base_64="", commit=True, sample_rate=sample_rate)

    @property
    def pcm(self) -> bytes:
        return base64.b64decode(self.audio_base_64)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "message_type": self.message_type.value,
            "audio_base_64": self.audio_base_64,
            "commit": self.commit,
            "sample_rate": self.sample_rate,
        }
        if self.previous_txt:
            data["previous_txt"] = self.previous_txt
        return data


ClientEvent = Union[InputAudioChunkEvent]


def _validate_input_audio_chunk(event: InputAudioChunkEvent) -> None:
    if not isinstance(event.audio_base_64, str):
        raise EncodeError("audio_base_64 must be a string")
    if not isinstance(event.commit, bool):
        raise EncodeError("commit must be a boolean")
    if isinstance(event.sample_rate, bool) or not isinstance(event.sample_rate, int) or event.sample_rate <= 0:
        raise EncodeError(f"sample_rate must be a positive integer, got {event.sample_rate!r}")
    if not isinstance(event.previous_txt, str):
        raise EncodeError("previous_txt must be a string")
    if not event.audio_base_64 and not event.commit:
        raise EncodeError("audio chunk without audio must be a commit")
    if event.audio_base_64:
        try:
            base64.b64decode(event.audio_base_64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncodeError(f"audio_base_64 is not valid base64: {e}") from e


_CLIENT_VALIDATORS: Dict[type, Callable[[Any], None]] = {
    InputAudioChunkEvent: _validate_input_audio_chunk,
}


def encode(event: ClientEvent) -> bytes:
    """
    Serialize a client event to its JSON wire form.

    The ``message_type`` discriminator is always emitted at the top level.

    Raises:
        EncodeError: the event type is unknown or its fields are malformed.
    """
    validate = _CLIENT_VALIDATORS.get(type(event))
    if validate is None:
        raise EncodeError(f"unsupported client event: {type(event).__name__}")
    validate(event)
    return dumps(event.to_dict(), ensure_ascii=False).encode("utf-8")


def decode_client_event(data: Union[bytes, bytearray, str]) -> ClientEvent:
    """Parse a client event back from the wire (used by fakes and tests)."""
    payload = _load_object(data)
    raw_type = payload.get("message_type")
    if raw_type != ClientEventType.INPUT_AUDIO_CHUNK.value:
        raise DecodeError(f"unknown client event type: {raw_type!r}")
    where = raw_type
    return InputAudioChunkEvent(
        audio_base_64=_field(payload, "audio_base_64", _STR, default="", where=where),
        commit=_field(payload, "commit", _BOOL, default=False, where=where),
        sample_rate=_field(payload, "sample_rate", _INT, where=where),
        previous_txt=_field(payload, "previous_txt", _STR, default="", where=where),
    )


# ---------------------------------------------------------------------------
# Server events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConfig:
    """Session configuration echoed by the server in ``session_started``. Absent fields are None."""
    sample_rate: Optional[int] = None
    audio_format: Optional[str] = None
    language_code: Optional[str] = None
    commit_strategy: Optional[str] = None
    vad_silence_threshold_secs: Optional[float] = None
    vad_threshold: Optional[float] = None
    min_speech_duration_ms: Optional[int] = None
    min_silence_duration_ms: Optional[int] = None
    model_id: Optional[str] = None
    enable_logging: Optional[bool] = None
    include_timestamps: Optional[bool] = None
    include_language_detection: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> "SessionConfig":
        if not isinstance(data, dict):
            raise DecodeError(f"session_started: config is not an object: {type(data).__name__}")
        kwargs = {
            name: _field(data, name, types, default=None, where="session_started.config")
            for name, types in _SESSION_CONFIG_FIELDS.items()
        }
        return cls(**kwargs)


_SESSION_CONFIG_FIELDS: Dict[str, Tuple[type, ...]] = {
    "sample_rate": _INT,
    "audio_format": _STR,
    "language_code": _STR,
    "commit_strategy": _STR,
    "vad_silence_threshold_secs": _NUMBER,
    "vad_threshold": _NUMBER,
    "min_speech_duration_ms": _INT,
    "min_silence_duration_ms": _INT,
    "model_id": _STR,
    "enable_logging": _BOOL,
    "include_timestamps": _BOOL,
    "include_language_detection": _BOOL,
}


@dataclass(frozen=True)
class SessionStartedEvent:
    session_id: str
    config: SessionConfig = field(default_factory=SessionConfig)
    message_type: ServerEventType = field(default=ServerEventType.SESSION_STARTED, init=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionStartedEvent":
        where = ServerEventType.SESSION_STARTED.value
        config = data.get("config")
        return cls(
            session_id=_field(data, "session_id", _STR, where=where),
            config=SessionConfig() if config is None else SessionConfig.from_dict(config),
        )


@dataclass(frozen=True)
class PartialTranscriptEvent:
    """Interim transcript of the current segment, may still change."""
    text: str
    message_type: ServerEventType = field(default=ServerEventType.PARTIAL_TRANSCRIPT, init=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialTranscriptEvent":
        return cls(text=_field(data, "text", _STR, where=ServerEventType.PARTIAL_TRANSCRIPT.value))


@dataclass(frozen=True)
class CommittedTranscriptEvent:
    """Final transcript of a committed segment."""
    text: str
    message_type: ServerEventType = field(default=ServerEventType.COMMITTED_TRANSCRIPT, init=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommittedTranscriptEvent":
        return cls(text=_field(data, "text", _STR, where=ServerEventType.COMMITTED_TRANSCRIPT.value))


@dataclass(frozen=True)
class WordTimestamp:
    """One word span, times in seconds from the start of the session audio."""
    text: str
    start: float
    end: float


@dataclass(frozen=True)
class CommittedTranscriptWithTimestampsEvent:
    """Final transcript with word level timing (sent when ``include_timestamps`` is on)."""
    text: str
    language_code: Optional[str] = None
    words: Tuple[WordTimestamp, ...] = ()
    message_type: ServerEventType = field(
        default=ServerEventType.COMMITTED_TRANSCRIPT_WITH_TIMESTAMPS, init=False
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommittedTranscriptWithTimestampsEvent":
        where = ServerEventType.COMMITTED_TRANSCRIPT_WITH_TIMESTAMPS.value
        raw_words = _field(data, "words", (list,), default=[], where=where)
        words = []
        for i, raw in enumerate(raw_words):
            if not isinstance(raw, dict):
                raise DecodeError(f"{where}: words[{i}] is not an object")
            word_where = f"{where}.words[{i}]"
            words.append(WordTimestamp(
                text=_field(raw, "text", _STR, where=word_where),
                start=float(_field(raw, "start", _NUMBER, where=word_where)),
                end=float(_field(raw, "end", _NUMBER, where=word_where)),
            ))
        return cls(
            text=_field(data, "text", _STR, where=where),
            language_code=_field(data, "language_code", _STR, default=None, where=where),
            words=tuple(words),
        )


@dataclass(frozen=True)
class TranscriptionErrorEvent:
    """
    Any of the fourteen error-family events.

    The server usually closes the session after sending one of these.
    """
    message_type: ServerEventType
    error: str = ""

    def __post_init__(self) -> None:
        message_type = ServerEventType(self.message_type)
        if message_type not in ERROR_EVENT_TYPES:
            raise ValueError(f"{message_type.value} is not an error event type")
        object.__setattr__(self, "message_type", message_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptionErrorEvent":
        message_type = ServerEventType(data["message_type"])
        return cls(
            message_type=message_type,
            error=_field(data, "error", _STR, default="", where=message_type.value),
        )


ServerEvent = Union[
    SessionStartedEvent,
    PartialTranscriptEvent,
    CommittedTranscriptEvent,
    CommittedTranscriptWithTimestampsEvent,
    TranscriptionErrorEvent,
]


_SERVER_DECODERS: Dict[ServerEventType, Callable[[Dict[str, Any]], ServerEvent]] = {
    ServerEventType.SESSION_STARTED: SessionStartedEvent.from_dict,
    ServerEventType.PARTIAL_TRANSCRIPT: PartialTranscriptEvent.from_dict,
    ServerEventType.COMMITTED_TRANSCRIPT: CommittedTranscriptEvent.from_dict,
    ServerEventType.COMMITTED_TRANSCRIPT_WITH_TIMESTAMPS: CommittedTranscriptWithTimestampsEvent.from_dict,
    **{t: TranscriptionErrorEvent.from_dict for t in ERROR_EVENT_TYPES},
}
assert set(_SERVER_DECODERS) == set(ServerEventType), "every server event type needs a decoder"


def decode(data: Union[bytes, bytearray, str]) -> ServerEvent:
    """
    Parse one server message.

    Only ``message_type`` is looked at first, then the matching variant parses
    and validates the whole payload.

    Raises:
        DecodeError: invalid JSON, missing/unknown ``message_type``, or a payload
            that does not fit its declared variant.
    """
    payload = _load_object(data)
    raw_type = payload.get("message_type")
    if raw_type is None:
        raise DecodeError("payload has no message_type")
    if not isinstance(raw_type, str):
        raise DecodeError(f"message_type is not a string: {raw_type!r}")
    try:
        event_type = ServerEventType(raw_type)
    except ValueError:
        raise DecodeError(f"unknown server event type: {raw_type!r}") from None
    return _SERVER_DECODERS[event_type](payload)
