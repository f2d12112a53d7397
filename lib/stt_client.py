from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from logging import Logger, getLogger
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from config import ELEVENLABS_API_KEY, ELEVENLABS_STT_REALTIME_URL, ELEVENLABS_STT_REALTIME_MODEL
from lib.stt_session import SttSession
from lib.stt_transport import Dialer, WebsocketsDialer


class AudioFormat(str, Enum):
    PCM_8000 = "pcm_8000"
    PCM_16000 = "pcm_16000"
    PCM_22050 = "pcm_22050"
    PCM_24000 = "pcm_24000"
    PCM_44100 = "pcm_44100"
    PCM_48000 = "pcm_48000"
    ULAW_8000 = "ulaw_8000"

    @property
    def sample_rate(self) -> int:
        return int(self.value.split("_", 1)[1])


class CommitStrategy(str, Enum):
    MANUAL = "manual"  # client sends commit=true at the end of each utterance
    VAD = "vad"        # server commits on detected silence


@dataclass(frozen=True)
class SttClientConfig:
    """
    Client-wide settings. The API key goes into the ``xi-api-key`` header,
    never into the URL.
    """
    api_key: str
    base_url: str = ELEVENLABS_STT_REALTIME_URL

    @classmethod
    def from_env(cls) -> "SttClientConfig":
        if not ELEVENLABS_API_KEY:
            raise ValueError("ELEVENLABS_API_KEY is not set")
        return cls(api_key=ELEVENLABS_API_KEY)


@dataclass(frozen=True)
class ConnectOptions:
    """
    Query parameters of one realtime session.

    Defaults are the protocol defaults, except `include_timestamps` which this
    client turns on. VAD tuning is only sent with ``commit_strategy=vad``.
    Keys the dataclass does not know go to `extra_query` untouched.
    """
    model_id: str = ELEVENLABS_STT_REALTIME_MODEL
    audio_format: AudioFormat = AudioFormat.PCM_16000
    language_code: Optional[str] = None  # ISO 639-1 or ISO 639-3, None = autodetect
    commit_strategy: CommitStrategy = CommitStrategy.MANUAL

    # Silence (in seconds) after which VAD commits the segment.
    vad_silence_threshold_secs: float = 1.5
    # How big difference between silence and speech.
    vad_threshold: float = 0.4
    # Speech shorter than this is ignored as noise.
    min_speech_duration_ms: int = 250
    # Minimum silence VAD recognizes as a pause.
    min_silence_duration_ms: int = 2500

    include_timestamps: bool = True
    include_language_detection: bool = False
    # False = zero retention mode (enterprise only)
    enable_logging: bool = True

    extra_query: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # accept plain strings, reject unknown values early
        object.__setattr__(self, "audio_format", AudioFormat(self.audio_format))
        object.__setattr__(self, "commit_strategy", CommitStrategy(self.commit_strategy))
        if not self.model_id:
            raise ValueError("model_id is required")

    @property
    def sample_rate(self) -> int:
        return self.audio_format.sample_rate

    def with_query(self, **overrides: Any) -> "ConnectOptions":
        """Return a copy with `overrides` applied; unknown keys are added to `extra_query`."""
        known = {f.name for f in fields(self)} - {"extra_query"}
        changes = {k: v for k, v in overrides.items() if k in known}
        extra = dict(self.extra_query)
        extra.update({k: _query_value(v) for k, v in overrides.items() if k not in known})
        return replace(self, **changes, extra_query=extra)

    def to_query(self) -> Dict[str, str]:
        query: Dict[str, Any] = {
            "model_id": self.model_id,
            "audio_format": self.audio_format.value,
            "commit_strategy": self.commit_strategy.value,
            "include_timestamps": self.include_timestamps,
            "include_language_detection": self.include_language_detection,
            "enable_logging": self.enable_logging,
        }
        if self.language_code:
            query["language_code"] = self.language_code
        if self.commit_strategy == CommitStrategy.VAD:
            query.update({
                "vad_silence_threshold_secs": self.vad_silence_threshold_secs,
                "vad_threshold": self.vad_threshold,
                "min_speech_duration_ms": self.min_speech_duration_ms,
                "min_silence_duration_ms": self.min_silence_duration_ms,
            })
        query.update(self.extra_query)
        return {k: _query_value(v) for k, v in query.items()}


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


class SttClient:
    """
    Entry point: dials the realtime endpoint and hands back an ``SttSession``.

    Usage::

        client = SttClient(SttClientConfig.from_env())
        session = await client.connect(language_code="eng")
        recognizer = Recognizer(session, on_event)
    """

    def __init__(self, config: SttClientConfig) -> None:
        self._cfg = config

    @property
    def config(self) -> SttClientConfig:
        return self._cfg

    def build_url(self, options: ConnectOptions) -> str:
        return f"{self._cfg.base_url}?{urlencode(options.to_query())}"

    def headers(self) -> Dict[str, str]:
        return {"xi-api-key": self._cfg.api_key}

    async def connect(
            self,
            options: Optional[ConnectOptions] = None,
            *,
            dialer: Optional[Dialer] = None,
            logger: Optional[Logger] = None,
            **query: Any,
    ) -> SttSession:
        """
        Open a new session. Keyword `query` entries override `options`.

        Raises:
            DialError: the connection could not be established (not retried).
        """
        options = (options or ConnectOptions()).with_query(**query)
        dialer = dialer or WebsocketsDialer()
        log = logger or getLogger(__name__)

        url = self.build_url(options)
        log.debug("[STT] connecting to %s", url)
        transport = await dialer.dial(url, self.headers())
        log.info("[STT] connected (model=%s, format=%s, commit=%s).",
                 options.model_id, options.audio_format.value, options.commit_strategy.value)
        return SttSession(transport, options=options, logger=logger)
