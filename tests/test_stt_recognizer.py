"""
Tests for the Recognizer read loop, lifecycle and audio submission.

All tests run against the in-memory transport, so no API key is needed.

    pytest tests/test_stt_recognizer.py -v
"""
from __future__ import annotations

import asyncio
import base64
import unittest
from typing import List
from urllib.parse import parse_qs, urlparse

from fake_transport import FakeDialer, FakeTransport
from lib.stt_client import ConnectOptions, SttClient, SttClientConfig
from lib.stt_errors import (
    PermanentError,
    RecognizerCancelledError,
    RecognizerStateError,
    ServerError,
)
from lib.stt_events import (
    CommittedTranscriptEvent,
    PartialTranscriptEvent,
    ServerEvent,
    ServerEventType,
    SessionStartedEvent,
    TranscriptionErrorEvent,
)
from lib.stt_recognizer import Recognizer, RecognizerState
from lib.stt_session import SttSession
from lib.stt_transport import MessageType


TIMEOUT_S = 2.0


def _server_close() -> PermanentError:
    return PermanentError(ConnectionError("closed by server"), clean=True)


class TestRecognizerReadLoop(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.transport = FakeTransport()
        self.session = SttSession(self.transport)
        self.received: List[ServerEvent] = []

    async def _wait_outcome(self, recognizer: Recognizer):
        return await asyncio.wait_for(recognizer.wait(), TIMEOUT_S)

    async def test_transient_errors_are_skipped(self) -> None:
        self.transport.push_frame(MessageType.BINARY, b"\x00")                  # protocol error
        self.transport.push_event({"message_type": "no_such_event"})            # decode error
        self.transport.push_frame(MessageType.TEXT, b"{broken")                 # decode error
        self.transport.push_error(RuntimeError("glitch"))                       # anything else
        self.transport.push_event({"message_type": "partial_transcript", "text": "hel"})
        close = _server_close()
        self.transport.push_error(close)

        recognizer = Recognizer(self.session, self.received.append)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIs(outcome, close.cause)
        self.assertEqual(self.received, [PartialTranscriptEvent(text="hel")])
        self.assertEqual(self.transport.reads, 6)
        self.assertEqual(recognizer.state, RecognizerState.STOPPED)

    async def test_permanent_error_ends_loop(self) -> None:
        cause = ConnectionResetError("reset by peer")
        self.transport.push_error(PermanentError(cause))
        self.transport.push_event({"message_type": "partial_transcript", "text": "never seen"})

        recognizer = Recognizer(self.session, self.received.append)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIs(outcome, cause)
        self.assertIs(recognizer.error, cause)
        self.assertEqual(self.received, [])
        self.assertEqual(self.transport.reads, 1)

    async def test_normal_close_by_server_surfaces_cause(self) -> None:
        cause = ConnectionError("server closed 1000")
        self.transport.push_error(PermanentError(cause, clean=True))

        recognizer = Recognizer(self.session, self.received.append)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIs(outcome, cause)
        self.assertIs(recognizer.error, cause)
        self.assertEqual(self.transport.close_calls, 0)

    async def test_second_recognizer_on_same_session_ends(self) -> None:
        first = Recognizer(self.session, self.received.append)
        first.start()
        await asyncio.sleep(0.01)  # first loop is now blocked on an empty transport

        second = Recognizer(self.session)
        second.start()
        outcome = await self._wait_outcome(second)

        self.assertIsInstance(outcome, RuntimeError)
        self.assertTrue(first.running)

        self.transport.push_event({"message_type": "partial_transcript", "text": "hel"})
        await first.stop()
        self.assertIsNone(await self._wait_outcome(first))
        self.assertEqual(self.received, [PartialTranscriptEvent(text="hel")])

    async def test_handlers_called_in_registration_order(self) -> None:
        calls: List[str] = []
        self.transport.push_event({"message_type": "partial_transcript", "text": "a"})
        self.transport.push_event({"message_type": "committed_transcript", "text": "ab"})
        self.transport.push_error(_server_close())

        recognizer = Recognizer(
            self.session,
            lambda ev: calls.append(f"first:{ev.text}"),
            lambda ev: calls.append(f"second:{ev.text}"),
        )
        recognizer.add_handler(lambda ev: calls.append(f"third:{ev.text}"))
        recognizer.start()
        await self._wait_outcome(recognizer)

        self.assertEqual(calls, [
            "first:a", "second:a", "third:a",
            "first:ab", "second:ab", "third:ab",
        ])

    async def test_async_handler_is_awaited(self) -> None:
        async def slow_handler(event: ServerEvent) -> None:
            await asyncio.sleep(0.01)
            self.received.append(event)

        self.transport.push_event({"message_type": "partial_transcript", "text": "1"})
        self.transport.push_event({"message_type": "partial_transcript", "text": "2"})
        self.transport.push_error(_server_close())

        recognizer = Recognizer(self.session, slow_handler)
        recognizer.start()
        await self._wait_outcome(recognizer)

        self.assertEqual([e.text for e in self.received], ["1", "2"])

    async def test_handler_exception_is_not_caught(self) -> None:
        def broken_handler(event: ServerEvent) -> None:
            raise ValueError("handler bug")

        self.transport.push_event({"message_type": "partial_transcript", "text": "x"})
        recognizer = Recognizer(self.session, broken_handler)
        recognizer.start()

        with self.assertRaises(ValueError):
            await self._wait_outcome(recognizer)
        self.assertIsInstance(recognizer.error, ValueError)
        self.assertEqual(recognizer.state, RecognizerState.STOPPED)

    async def test_server_error_event_ends_loop_after_handlers(self) -> None:
        self.transport.push_event({"message_type": "quota_exceeded", "error": "out of credits"})
        self.transport.push_event({"message_type": "partial_transcript", "text": "never seen"})

        recognizer = Recognizer(self.session, self.received.append)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIsInstance(outcome, ServerError)
        self.assertEqual(outcome.error, "out of credits")
        self.assertEqual(outcome.event.message_type, ServerEventType.QUOTA_EXCEEDED)
        self.assertEqual(len(self.received), 1)
        self.assertIsInstance(self.received[0], TranscriptionErrorEvent)

    async def test_non_fatal_server_error_event(self) -> None:
        self.transport.push_event({"message_type": "commit_throttled", "error": "slow down"})
        self.transport.push_event({"message_type": "committed_transcript", "text": "ok"})
        close = _server_close()
        self.transport.push_error(close)

        recognizer = Recognizer(self.session, self.received.append, fatal_event_types=frozenset())
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIs(outcome, close.cause)
        self.assertEqual([e.message_type for e in self.received],
                         [ServerEventType.COMMIT_THROTTLED, ServerEventType.COMMITTED_TRANSCRIPT])

    async def test_max_transient_errors(self) -> None:
        for i in range(1, 4):
            self.transport.push_error(RuntimeError(f"glitch {i}"))

        recognizer = Recognizer(self.session, self.received.append, max_transient_errors=2)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIsInstance(outcome, RuntimeError)
        self.assertEqual(str(outcome), "glitch 3")

    async def test_cancel_while_reading(self) -> None:
        cancel = asyncio.Event()
        recognizer = Recognizer(self.session, self.received.append, cancel=cancel)
        recognizer.start()
        await asyncio.sleep(0.01)  # loop is now blocked on an empty transport

        cancel.set()
        outcome = await self._wait_outcome(recognizer)

        self.assertIsInstance(outcome, RecognizerCancelledError)
        self.assertEqual(self.received, [])

    async def test_cancel_before_first_read(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        self.transport.push_event({"message_type": "partial_transcript", "text": "never seen"})

        recognizer = Recognizer(self.session, self.received.append, cancel=cancel)
        recognizer.start()
        outcome = await self._wait_outcome(recognizer)

        self.assertIsInstance(outcome, RecognizerCancelledError)
        self.assertEqual(self.transport.reads, 0)


class TestRecognizerLifecycle(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.transport = FakeTransport()
        self.session = SttSession(self.transport)

    async def test_stop_unblocks_read_and_closes_once(self) -> None:
        recognizer = Recognizer(self.session)
        recognizer.start()
        self.assertTrue(recognizer.running)
        await asyncio.sleep(0.01)

        await recognizer.stop()
        await recognizer.stop()
        outcome = await asyncio.wait_for(recognizer.wait(), TIMEOUT_S)

        self.assertIsNone(outcome)
        self.assertEqual(self.transport.close_calls, 1)
        self.assertEqual(recognizer.state, RecognizerState.STOPPED)

    async def test_close_error_reported_by_stop(self) -> None:
        self.transport.close_error = OSError("close failed")
        recognizer = Recognizer(self.session)
        with self.assertRaises(OSError):
            await recognizer.stop()
        # second stop is a no-op, does not retry the close
        await recognizer.stop()
        self.assertEqual(self.transport.close_calls, 1)

    async def test_cannot_start_twice(self) -> None:
        recognizer = Recognizer(self.session)
        recognizer.start()
        with self.assertRaises(RecognizerStateError):
            recognizer.start()
        await recognizer.stop()

    async def test_cannot_restart_after_stop(self) -> None:
        recognizer = Recognizer(self.session)
        recognizer.start()
        await recognizer.stop()
        await asyncio.wait_for(recognizer.wait(), TIMEOUT_S)
        with self.assertRaises(RecognizerStateError):
            recognizer.start()

    async def test_wait_requires_start(self) -> None:
        with self.assertRaises(RecognizerStateError):
            await Recognizer(self.session).wait()

    async def test_add_handler_after_start(self) -> None:
        recognizer = Recognizer(self.session)
        recognizer.start()
        with self.assertRaises(RecognizerStateError):
            recognizer.add_handler(print)
        await recognizer.stop()

    async def test_context_manager(self) -> None:
        async with Recognizer(self.session) as recognizer:
            self.assertTrue(recognizer.running)
        self.assertEqual(self.transport.close_calls, 1)
        self.assertEqual(recognizer.state, RecognizerState.STOPPED)
        self.assertIsNone(await asyncio.wait_for(recognizer.wait(), TIMEOUT_S))


class TestRecognizerAudio(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.transport = FakeTransport()
        self.session = SttSession(self.transport)

    async def test_send_base64_encodes_exact_bytes(self) -> None:
        pcm = bytes(range(256))
        recognizer = Recognizer(self.session)
        await recognizer.send(pcm)

        [event] = self.transport.sent_events()
        self.assertEqual(base64.b64decode(event.audio_base_64), pcm)
        self.assertFalse(event.commit)
        self.assertEqual(event.sample_rate, 16000)
        self.assertEqual(event.previous_txt, "")

    async def test_previous_txt_with_first_chunk(self) -> None:
        recognizer = Recognizer(self.session)
        await recognizer.send(b"\x01\x00", previous_txt="Hi")
        [event] = self.transport.sent_events()
        self.assertEqual(event.previous_txt, "Hi")

    async def test_commit(self) -> None:
        recognizer = Recognizer(self.session)
        await recognizer.commit()

        [event] = self.transport.sent_events()
        self.assertTrue(event.commit)
        self.assertEqual(event.audio_base_64, "")

    async def test_sample_rate_follows_session_audio_format(self) -> None:
        session = SttSession(self.transport, options=ConnectOptions(audio_format="pcm_24000"))
        recognizer = Recognizer(session)
        await recognizer.send(b"\x00\x00")
        await recognizer.commit()
        self.assertEqual([e.sample_rate for e in self.transport.sent_events()], [24000, 24000])

    async def test_send_error_returned_to_caller(self) -> None:
        self.transport.write_error = OSError("broken pipe")
        recognizer = Recognizer(self.session)
        with self.assertRaises(OSError):
            await recognizer.send(b"\x00\x00")

    async def test_send_after_stop(self) -> None:
        recognizer = Recognizer(self.session)
        recognizer.start()
        await recognizer.stop()
        with self.assertRaises(RecognizerStateError):
            await recognizer.send(b"\x00\x00")
        with self.assertRaises(RecognizerStateError):
            await recognizer.commit()
        self.assertEqual(self.transport.sent, [])


class TestEndToEnd(unittest.IsolatedAsyncioTestCase):

    async def test_session_transcripts_then_auth_error(self) -> None:
        dialer = FakeDialer()
        client = SttClient(SttClientConfig(api_key="secret"))
        session = await client.connect(dialer=dialer, language_code="eng")

        query = parse_qs(urlparse(dialer.uri).query)
        self.assertEqual(query["language_code"], ["eng"])
        self.assertEqual(query["model_id"], ["scribe_v2_realtime"])
        self.assertEqual(dialer.headers, {"xi-api-key": "secret"})

        received: List[ServerEvent] = []
        recognizer = Recognizer(session, received.append)
        recognizer.start()

        server = dialer.transport
        server.push_event({"message_type": "session_started", "session_id": "abc123",
                           "config": {"language_code": "eng"}})
        server.push_event({"message_type": "partial_transcript", "text": "hel"})
        await recognizer.send(b"\x10\x00" * 160)
        server.push_event({"message_type": "committed_transcript", "text": "hello"})
        await recognizer.commit()
        server.push_event({"message_type": "auth_error", "error": "invalid key"})

        outcome = await asyncio.wait_for(recognizer.wait(), TIMEOUT_S)

        self.assertIsInstance(received[0], SessionStartedEvent)
        self.assertEqual(received[0].session_id, "abc123")
        self.assertEqual(received[1:3], [PartialTranscriptEvent(text="hel"), CommittedTranscriptEvent(text="hello")])
        self.assertEqual(received[3].error, "invalid key")
        self.assertIsInstance(outcome, ServerError)
        self.assertIn("invalid key", str(outcome))

        self.assertEqual([e.commit for e in server.sent_events()], [False, True])
        await recognizer.stop()
        self.assertEqual(server.close_calls, 1)
