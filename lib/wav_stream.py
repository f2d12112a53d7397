from __future__ import annotations

import asyncio
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Iterator, Optional

from lib.stt_recognizer import Recognizer
from lib.utils import make_silence_chunk


logger = getLogger(__name__)


@dataclass(frozen=True)
class WavFormat:
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str
    compname: str


def inspect_wav(path: Path) -> WavFormat:
    path = path.resolve()
    with wave.open(str(path), "rb") as wf:
        return WavFormat(
            channels=wf.getnchannels(),
            sample_width_bytes=wf.getsampwidth(),
            sample_rate=wf.getframerate(),
            n_frames=wf.getnframes(),
            comptype=wf.getcomptype(),
            compname=wf.getcompname(),
        )


def iter_wav_pcm_chunks(
        path: Path,
        *,
        chunk_ms: int,
        expected_sample_rate: int,
        expected_channels: int = 1,
        expected_sample_width_bytes: int = 2,
) -> Iterator[bytes]:
    """
    Yield raw PCM frames from a WAV file in fixed chunk sizes.

    Assumptions/enforced:
      - uncompressed PCM WAV (comptype == 'NONE')
      - expected sample rate / channels / sample width (the server does no resampling
        beyond the declared audio_format)
    """
    fmt = inspect_wav(path)

    if fmt.comptype != "NONE":
        raise ValueError(f"{path.name}: compressed WAV not supported (comptype={fmt.comptype} {fmt.compname})")
    if fmt.sample_rate != expected_sample_rate:
        raise ValueError(f"{path.name}: sample_rate={fmt.sample_rate} expected={expected_sample_rate}")
    if fmt.channels != expected_channels:
        raise ValueError(f"{path.name}: channels={fmt.channels} expected={expected_channels}")
    if fmt.sample_width_bytes != expected_sample_width_bytes:
        raise ValueError(
            f"{path.name}: sample_width_bytes={fmt.sample_width_bytes} expected={expected_sample_width_bytes}"
        )

    frames_per_chunk = int(expected_sample_rate * (chunk_ms / 1000.0))
    if frames_per_chunk <= 0:
        raise ValueError("chunk_ms too small")

    with wave.open(str(path), "rb") as wf:
        while True:
            data = wf.readframes(frames_per_chunk)
            if not data:
                break
            yield data


def iter_pcm_file_chunks(
        path: Path,
        *,
        chunk_ms: int,
        sample_rate: int,
        sample_width_bytes: int = 2,
) -> Iterator[bytes]:
    """Yield fixed size chunks of a headerless PCM file (16-bit mono by default)."""
    chunk_bytes = int(sample_rate * (chunk_ms / 1000.0)) * sample_width_bytes
    if chunk_bytes <= 0:
        raise ValueError("chunk_ms too small")
    with path.open("rb") as f:
        while True:
            data = f.read(chunk_bytes)
            if not data:
                break
            yield data


async def stream_pcm_to_recognizer(
        pcm_chunks: Iterator[bytes],
        recognizer: Recognizer,
        *,
        chunk_ms: int,
        realtime_factor: float = 1.0,
        post_roll_silence_s: float = 0.0,
        commit: bool = True,
        previous_txt: str = "",
        running: Optional[asyncio.Event] = None,
) -> int:
    """
    Send PCM chunks to the recognizer with real-time-ish pacing.

    realtime_factor:
      - 1.0 = realtime
      - 0.5 = 2x faster
      - 0.0 = no pacing sleep (still chunked)

    `previous_txt` goes with the first chunk only. After the audio (and the
    optional trailing silence) a commit is sent unless `commit` is False.

    Returns the number of chunks sent. Send errors propagate to the caller.
    """
    delay_s = (chunk_ms / 1000.0) * realtime_factor
    cnt = 0
    for chunk in pcm_chunks:
        if running is not None and not running.is_set():
            break
        await recognizer.send(chunk, previous_txt=previous_txt if cnt == 0 else "")
        cnt += 1

        if cnt % 20 == 0:
            logger.debug("[WAV] sent chunk %d...", cnt)

        if delay_s > 0:
            await asyncio.sleep(delay_s)

    # trailing silence lets VAD close the last segment
    tot = 0.0
    while tot < post_roll_silence_s:
        await recognizer.send(make_silence_chunk(recognizer.sample_rate, chunk_ms / 1000.0))
        cnt += 1
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        tot += chunk_ms / 1000.0

    if commit:
        await recognizer.commit()
    logger.info("[WAV] finished sending %d chunks.", cnt)
    return cnt
