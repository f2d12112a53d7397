"""
Continuous recognition on top of one ``SttSession``.

Lifecycle
---------
``CREATED -> RUNNING -> STOPPED``, no way back. A stopped recognizer cannot be
restarted, build a new one (over a new session).

- ``start()`` spawns the read loop task and returns immediately.
- ``wait()`` waits for the loop to end and returns its terminal outcome:
  ``None`` when the session was closed through ``stop()``, otherwise the
  exception that ended the loop (a close started by the server included).
  Calling it is optional, the outcome is also logged and kept in ``error``.
- ``stop()`` closes the session, which also unblocks a read in flight. It
  raises close errors itself, independent of the loop outcome. It does not
  wait for the loop, so ``state`` reads RUNNING until the loop has exited.
  Leaving ``async with`` waits for it.

Read loop
---------
One task, the only reader of the session. Each iteration:

1. ends with ``RecognizerCancelledError`` if the `cancel` event is set
   (the event is also raced against the read in flight);
2. reads one event;
3. passes it to every handler in registration order (coroutine handlers are
   awaited). Handler exceptions are NOT caught: they end the loop task and
   are re-raised from ``wait()``;
4. on ``PermanentError`` ends with its cause, anything else is transient:
   logged as a warning and the read is retried right away (no backoff, no
   cap unless `max_transient_errors` is given).

Error-family server events (``auth_error``, ``quota_exceeded``, ...) are
delivered to handlers first, then end the loop with ``ServerError`` when their
type is in `fatal_event_types` (all of them by default).
"""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from logging import Logger
from typing import AbstractSet, Awaitable, Callable, List, Optional, Union

from config import AUDIO_SAMPLE_RATE
from lib.stt_errors import PermanentError, RecognizerCancelledError, RecognizerStateError, ServerError
from lib.stt_events import ERROR_EVENT_TYPES, InputAudioChunkEvent, ServerEvent, TranscriptionErrorEvent
from lib.stt_session import SttSession


ServerEventHandler = Callable[[ServerEvent], Union[None, Awaitable[None]]]


class RecognizerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class Recognizer:

    def __init__(
            self,
            session: SttSession,
            *handlers: ServerEventHandler,
            sample_rate: Optional[int] = None,
            cancel: Optional[asyncio.Event] = None,
            fatal_event_types: AbstractSet[str] = ERROR_EVENT_TYPES,
            transient_retry_delay_s: float = 0.0,
            max_transient_errors: Optional[int] = None,
            logger: Optional[Logger] = None,
    ) -> None:
        """
        Args:
            session: Open session. The recognizer reads from it exclusively while running.
            handlers: Called with every decoded server event, in this order.
            sample_rate: Sample rate sent with audio chunks. Defaults to the
                session's audio format, or AUDIO_SAMPLE_RATE.
            cancel: External cancel signal, checked between reads and raced against the read in flight.
            fatal_event_types: Error-family event types that end the read loop.
            transient_retry_delay_s: Sleep before retrying after a transient read error.
                0 keeps the loop retrying immediately (it still yields to the event loop).
            max_transient_errors: End the loop after this many consecutive transient
                errors. None = retry forever.
            logger: Logging sink, defaults to the session's logger.
        """
        if sample_rate is None:
            sample_rate = session.options.sample_rate if session.options is not None else AUDIO_SAMPLE_RATE

        self._session = session
        self._handlers: List[ServerEventHandler] = list(handlers)
        self._sample_rate = sample_rate
        self._cancel = cancel
        self._fatal_event_types = frozenset(fatal_event_types)
        self._retry_delay_s = transient_retry_delay_s
        self._max_transient_errors = max_transient_errors
        self._logger = logger or session.logger

        self._state = RecognizerState.CREATED
        self._task: Optional[asyncio.Task] = None
        self._error: Optional[BaseException] = None
        self._stop_called = False

    @property
    def state(self) -> RecognizerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == RecognizerState.RUNNING

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def error(self) -> Optional[BaseException]:
        """Terminal outcome of the read loop, None while running or after stop()."""
        return self._error

    def add_handler(self, handler: ServerEventHandler) -> None:
        if self._state != RecognizerState.CREATED:
            raise RecognizerStateError("handlers can only be added before start()")
        self._handlers.append(handler)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the read loop. Must be called from a running event loop."""
        if self._state != RecognizerState.CREATED:
            raise RecognizerStateError(f"cannot start a recognizer in state {self._state.value}")
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._on_loop_done)
        self._state = RecognizerState.RUNNING
        self._logger.debug("[STT] recognizer started.")

    async def stop(self) -> None:
        """
        Close the session. Only the first call does anything.

        Does not wait for the read loop, use `wait()` for that.
        """
        if self._stop_called:
            self._logger.debug("[STT] recognizer already stopped.")
            return
        self._stop_called = True
        if self._state == RecognizerState.CREATED:
            self._state = RecognizerState.STOPPED
        await self._session.close()

    async def wait(self) -> Optional[BaseException]:
        """
        Wait for the read loop to end and return its terminal outcome.

        Raises:
            RecognizerStateError: start() was never called.
            Exception: whatever a handler raised, if that is what ended the loop.
        """
        if self._task is None:
            raise RecognizerStateError("recognizer was not started")
        await asyncio.wait({self._task})
        if not self._task.cancelled() and self._task.exception() is not None:
            raise self._task.exception()
        return self._error

    async def __aenter__(self) -> "Recognizer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
        if self._task is not None:
            await asyncio.wait({self._task})

    # -----------------------------------------------------------------------
    # Audio
    # -----------------------------------------------------------------------

    def _ensure_can_send(self) -> None:
        if self._stop_called or self._state == RecognizerState.STOPPED:
            raise RecognizerStateError("recognizer is stopped")

    async def send(self, pcm: bytes, previous_txt: str = "") -> None:
        """
        Send one chunk of raw audio (base64 encoded on the wire, commit=false).

        `previous_txt` is only accepted by the server on the first chunk of a session.
        """
        self._ensure_can_send()
        await self._session.send(InputAudioChunkEvent.from_pcm(pcm, self._sample_rate, previous_txt))

    async def commit(self) -> None:
        """Mark the end of an utterance, the server answers with a committed transcript."""
        self._ensure_can_send()
        await self._session.send(InputAudioChunkEvent.commit_only(self._sample_rate))

    # -----------------------------------------------------------------------
    # Read loop
    # -----------------------------------------------------------------------

    async def _read(self) -> ServerEvent:
        if self._cancel is None:
            return await self._session.read()

        read_task = asyncio.ensure_future(self._session.read())
        cancel_task = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not read_task.done():
                read_task.cancel()

        # an event that arrived together with the cancel signal is still delivered
        if read_task.done() and not read_task.cancelled():
            return read_task.result()
        raise RecognizerCancelledError("recognizer cancelled")

    async def _dispatch(self, event: ServerEvent) -> None:
        for handler in self._handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result

    def _closed_by_caller(self) -> bool:
        return self._stop_called or self._session.closed

    def _finish(self, outcome: Optional[BaseException]) -> None:
        self._error = outcome
        if outcome is None:
            self._logger.debug("[STT] session closed by caller.")
        else:
            self._logger.error("[STT] read loop terminated: %r", outcome)

    async def _run(self) -> None:
        transient_errors = 0
        try:
            while True:
                if self._cancel is not None and self._cancel.is_set():
                    self._finish(RecognizerCancelledError("recognizer cancelled"))
                    return

                try:
                    event = await self._read()
                except RecognizerCancelledError as e:
                    self._finish(e)
                    return
                except PermanentError as e:
                    # only a close we asked for is not an error
                    self._finish(None if self._closed_by_caller() else e.cause)
                    return
                except Exception as e:
                    transient_errors += 1
                    self._logger.warning("[STT] read message temporary error: %r", e)
                    if self._max_transient_errors is not None and transient_errors > self._max_transient_errors:
                        self._finish(e)
                        return
                    # sleep(0) still yields to the event loop
                    await asyncio.sleep(self._retry_delay_s)
                    continue

                transient_errors = 0
                await self._dispatch(event)

                if isinstance(event, TranscriptionErrorEvent) and event.message_type in self._fatal_event_types:
                    self._finish(ServerError(event))
                    return
        finally:
            self._logger.debug("[STT] read loop exited.")

    def _on_loop_done(self, task: asyncio.Task) -> None:
        self._state = RecognizerState.STOPPED
        if task.cancelled():
            if self._error is None:
                self._error = RecognizerCancelledError("read loop task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            # a handler raised
            self._logger.error("[STT] event handler crashed: %r", exc, exc_info=exc)
            self._error = exc
