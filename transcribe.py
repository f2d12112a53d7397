"""
Realtime transcription of an audio file
=======================================

Streams a WAV (16 kHz, mono, 16-bit) or a headerless PCM file to the
ElevenLabs realtime STT endpoint, prints partial and committed transcripts as
they arrive, and stops when the server is done or after an idle timeout.

Flow
----
1. connect (``xi-api-key`` from ``.env``, language from ``STT_LANGUAGE_CODE``)
2. start the recognizer (read loop runs in the background)
3. send the audio with real-time pacing, then commit
4. wait until the read loop ends or no event came for ``STT_IDLE_TIMEOUT_S``
5. stop (close the session)

Usage
-----
    source .venv/bin/activate
    python transcribe.py path/to/audio.wav
"""
from __future__ import annotations

import asyncio
import sys
from logging import getLogger
from pathlib import Path
from typing import List

from config import AUDIO_SAMPLE_RATE, CHUNK_MS, REALTIME_FACTOR, FINAL_SILENCE_S, IDLE_TIMEOUT_S, STT_LANGUAGE_CODE
from lib.stt_client import ConnectOptions, SttClient, SttClientConfig
from lib.stt_errors import DialError, RecognizerStateError
from lib.stt_events import (
    CommittedTranscriptEvent,
    CommittedTranscriptWithTimestampsEvent,
    PartialTranscriptEvent,
    ServerEvent,
    SessionStartedEvent,
    TranscriptionErrorEvent,
)
from lib.stt_recognizer import Recognizer
from lib.utils import setup_logging
from lib.wav_stream import iter_pcm_file_chunks, iter_wav_pcm_chunks, stream_pcm_to_recognizer

setup_logging()
logger = getLogger(__name__)


class TranscriptPrinter:
    """Event handler printing transcripts; remembers when the last event arrived."""

    def __init__(self) -> None:
        self.segments: List[str] = []
        self.last_event = asyncio.Event()

    def __call__(self, event: ServerEvent) -> None:
        self.last_event.set()
        if isinstance(event, SessionStartedEvent):
            logger.info("Session started: %s (%s)", event.session_id, event.config)
        elif isinstance(event, PartialTranscriptEvent):
            print(f"... {event.text}", flush=True)
        elif isinstance(event, CommittedTranscriptWithTimestampsEvent):
            print(f"[{event.language_code or '?'}] {event.text}  ({len(event.words)} words)", flush=True)
            self.segments.append(event.text)
        elif isinstance(event, CommittedTranscriptEvent):
            print(f">>> {event.text}", flush=True)
            self.segments.append(event.text)
        elif isinstance(event, TranscriptionErrorEvent):
            logger.error("Server error %s: %s", event.message_type.value, event.error)


async def _wait_until_idle(recognizer: Recognizer, printer: TranscriptPrinter, idle_s: float) -> None:
    """Return when the read loop ends, or once no event arrived for `idle_s` seconds."""
    loop_done = asyncio.ensure_future(recognizer.wait())
    try:
        while not loop_done.done():
            printer.last_event.clear()
            activity = asyncio.ensure_future(printer.last_event.wait())
            done, _ = await asyncio.wait({loop_done, activity}, timeout=idle_s, return_when=asyncio.FIRST_COMPLETED)
            activity.cancel()
            if not done:
                logger.info("No events for %.0fs, stopping.", idle_s)
                return
    finally:
        if not loop_done.done():
            loop_done.cancel()
            await asyncio.wait({loop_done})
        elif not loop_done.cancelled() and loop_done.exception() is None and loop_done.result() is not None:
            logger.error("Recognition ended with error: %s", loop_done.result())


async def main(audio_path: Path) -> None:
    client = SttClient(SttClientConfig.from_env())
    options = ConnectOptions(language_code=STT_LANGUAGE_CODE or None)

    try:
        session = await client.connect(options)
    except DialError as e:
        logger.error("Connect error: %s", e)
        sys.exit(1)

    printer = TranscriptPrinter()
    recognizer = Recognizer(session, printer)
    recognizer.start()
    try:
        if audio_path.suffix.lower() == ".wav":
            chunks = iter_wav_pcm_chunks(audio_path, chunk_ms=CHUNK_MS, expected_sample_rate=AUDIO_SAMPLE_RATE)
        else:
            chunks = iter_pcm_file_chunks(audio_path, chunk_ms=CHUNK_MS, sample_rate=AUDIO_SAMPLE_RATE)
        await stream_pcm_to_recognizer(
            chunks,
            recognizer,
            chunk_ms=CHUNK_MS,
            realtime_factor=REALTIME_FACTOR,
            post_roll_silence_s=FINAL_SILENCE_S,
        )
        await _wait_until_idle(recognizer, printer, IDLE_TIMEOUT_S)
    except RecognizerStateError:
        logger.error("Recognizer stopped while sending audio: %r", recognizer.error)
    finally:
        await recognizer.stop()

    print("\n".join(printer.segments))


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(f"usage: {sys.argv[0]} <audio.wav|audio.pcm>", file=sys.stderr)
        sys.exit(2)
    asyncio.run(main(Path(sys.argv[1])))
