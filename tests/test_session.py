"""Tests for the conversation state machine and its streaming turns."""

import json
import unittest

import requests

from fakes import (
    DeferredSpawn,
    FakeAPI,
    FakeStreamResponse,
    api_error,
    artifact,
    chunk,
    sse,
    sync_spawn,
)

from storefront_chat.file_handler import SelectedFile
from storefront_chat.models import Role
from storefront_chat.session import ConversationSession, SendRefused, SessionState


class _Base(unittest.TestCase):

    def make(self, streams=(), spawn=sync_spawn, api=None) -> ConversationSession:
        self.api = api or FakeAPI(streams=streams)
        self.states: list[SessionState] = []
        self.errors: list[str] = []
        session = ConversationSession(
            self.api,
            spawn=spawn,
            collection_name="test-collection",
            on_state_change=self.states.append,
            on_error=self.errors.append,
        )
        return session


# -----------------------------------------------------------------------
# Happy path
# -----------------------------------------------------------------------

class TestStreamingTurn(_Base):

    def test_hello_scenario(self) -> None:
        response = FakeStreamResponse([
            sse(chunk("Hi")),
            sse(chunk(" there!")),
            sse("[DONE]"),
        ])
        session = self.make([response])
        session.send("Hello")
        self.assertEqual(session.state, SessionState.SENDING)
        session.ui.pump()

        self.assertEqual([(m.role, m.content) for m in session.messages],
                         [(Role.USER, "Hello"), (Role.ASSISTANT, "Hi there!")])
        self.assertTrue(all(m.sealed for m in session.messages))
        self.assertEqual(self.states, [SessionState.SENDING, SessionState.STREAMING,
                                       SessionState.COMPLETED, SessionState.IDLE])
        self.assertEqual(session.last_outcome, SessionState.COMPLETED)
        self.assertIsNone(session.open_message)
        self.assertTrue(response.closed)

    def test_request_body(self) -> None:
        session = self.make([FakeStreamResponse([sse("[DONE]")])])
        session.send("  Hello  ")
        self.assertEqual(self.api.bodies, [{"message": "Hello",
                                            "collection_name": "test-collection"}])

    def test_frames_split_mid_line_and_mid_character(self) -> None:
        raw = sse(chunk("héllo"), "[DONE]")
        cut = raw.index("é".encode()) + 1
        session = self.make([FakeStreamResponse([raw[:5], raw[5:cut], raw[cut:]])])
        session.send("x")
        session.ui.pump()
        self.assertEqual(session.messages[-1].content, "héllo")

    def test_transport_close_without_done_completes(self) -> None:
        session = self.make([FakeStreamResponse([sse(chunk("partial"))])])
        session.send("x")
        session.ui.pump()
        self.assertEqual(session.last_outcome, SessionState.COMPLETED)
        self.assertEqual(session.messages[-1].content, "partial")

    def test_plain_text_frames_rendered(self) -> None:
        session = self.make([FakeStreamResponse([sse("Hello", " world", "[DONE]")])])
        session.send("x")
        session.ui.pump()
        self.assertEqual(session.messages[-1].content, "Hello world")

    def test_unknown_frames_skipped(self) -> None:
        session = self.make([FakeStreamResponse([
            sse(chunk("a"), json.dumps({"type": "tool_call"}), chunk("b"), "[DONE]"),
        ])])
        with self.assertLogs("storefront_chat", level="WARNING"):
            session.send("x")
            session.ui.pump()
        self.assertEqual(session.messages[-1].content, "ab")
        self.assertEqual(session.last_outcome, SessionState.COMPLETED)

    def test_artifacts_deduplicated_within_turn(self) -> None:
        session = self.make([FakeStreamResponse([
            sse(chunk("Here you go")),
            sse(artifact("product_search_results", {"id": "p1", "price": 10})),
            sse(artifact("product_search_results",
                         {"id": "p1", "price": 9}, {"id": "p2", "price": 20})),
            sse("[DONE]"),
        ])])
        session.send("lamps?")
        session.ui.pump()
        (group,) = session.messages[-1].artifacts
        self.assertEqual(group.type, "product_search_results")
        self.assertEqual(group.data, [{"id": "p1", "price": 9},
                                      {"id": "p2", "price": 20}])

    def test_two_turns_in_sequence(self) -> None:
        session = self.make([
            FakeStreamResponse([sse(chunk("one"), "[DONE]")]),
            FakeStreamResponse([sse(chunk("two"), "[DONE]")]),
        ])
        session.send("first")
        session.ui.pump()
        session.send("second")
        session.ui.pump()
        self.assertEqual([m.content for m in session.messages],
                         ["first", "one", "second", "two"])


# -----------------------------------------------------------------------
# Refusals
# -----------------------------------------------------------------------

class TestSendRefused(_Base):

    def test_busy(self) -> None:
        session = self.make([FakeStreamResponse([])], spawn=DeferredSpawn())
        session.send("first")
        with self.assertRaises(SendRefused) as ctx:
            session.send("second")
        self.assertEqual(ctx.exception.reason, "busy")
        self.assertEqual(len(session.messages), 1)
        self.assertEqual(session.state, SessionState.SENDING)

    def test_uploading(self) -> None:
        spawn = DeferredSpawn()
        session = self.make(spawn=spawn)
        session.uploads.add_files([SelectedFile.from_bytes("a.png", b"png")])
        with self.assertRaises(SendRefused) as ctx:
            session.send("look at this")
        self.assertEqual(ctx.exception.reason, "uploading")
        self.assertEqual(session.messages, [])
        self.assertEqual(self.api.bodies, [])
        self.assertEqual(self.states, [])

    def test_empty(self) -> None:
        session = self.make()
        with self.assertRaises(SendRefused) as ctx:
            session.send("   ")
        self.assertEqual(ctx.exception.reason, "empty")
        self.assertEqual(session.messages, [])

    def test_disposed(self) -> None:
        session = self.make()
        session.dispose()
        with self.assertRaises(SendRefused):
            session.send("hi")
        self.assertTrue(self.api.closed)


# -----------------------------------------------------------------------
# Attachments
# -----------------------------------------------------------------------

class TestAttachments(_Base):

    def test_uploaded_files_sent_and_cleared(self) -> None:
        session = self.make([FakeStreamResponse([sse(chunk("Nice"), "[DONE]")])])
        session.uploads.add_files([SelectedFile.from_bytes("a.png", b"png")])
        session.ui.pump()
        session.send("")
        session.ui.pump()

        user = session.messages[0]
        self.assertEqual(user.content, "")
        self.assertEqual([d.file_name for d in user.attachments], ["a.png"])
        (meta,) = self.api.bodies[0]["file_metadata"]
        self.assertEqual(meta["file_id"], "id-a.png")
        self.assertIn("markdown_content", meta)
        self.assertEqual(session.uploads.tasks, ())

    def test_failed_upload_not_attached(self) -> None:
        api = FakeAPI(streams=[FakeStreamResponse([sse("[DONE]")])],
                      uploads={"b.png": api_error("too big", 413)})
        session = self.make(api=api)
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.uploads.add_files([SelectedFile.from_bytes("a.png", b"1"),
                                       SelectedFile.from_bytes("b.png", b"2")])
        session.ui.pump()
        session.send("two files")
        self.assertEqual([f["file_name"] for f in self.api.bodies[0]["file_metadata"]],
                         ["a.png"])


# -----------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------

class TestCancel(_Base):

    def test_cancel_mid_stream_keeps_partial_content(self) -> None:
        spawn = DeferredSpawn()
        response = FakeStreamResponse([sse(chunk("Hi")), sse(chunk(" there")),
                                       sse("[DONE]")])
        session = self.make([response], spawn=spawn)
        session.send("Hello")
        spawn.run_all()
        session.ui.pump(limit=2)  # opened + first chunk
        self.assertEqual(session.messages[-1].content, "Hi")

        session.cancel()
        session.ui.pump()
        assistant = session.messages[-1]
        self.assertEqual(assistant.content, "Hi")
        self.assertTrue(assistant.sealed)
        self.assertEqual(session.last_outcome, SessionState.CANCELLED)
        self.assertEqual(session.state, SessionState.IDLE)
        self.assertEqual(self.errors, [])
        self.assertTrue(response.closed)

    def test_cancel_before_response(self) -> None:
        spawn = DeferredSpawn()
        response = FakeStreamResponse([sse(chunk("late"), "[DONE]")])
        session = self.make([response], spawn=spawn)
        handle = session.send("Hello")
        handle()
        spawn.run_all()
        session.ui.pump()
        self.assertEqual(len(session.messages), 1)
        self.assertEqual(session.last_outcome, SessionState.CANCELLED)
        self.assertTrue(response.closed)

    def test_cancel_is_idempotent(self) -> None:
        spawn = DeferredSpawn()
        session = self.make([FakeStreamResponse([])], spawn=spawn)
        handle = session.send("Hello")
        handle()
        count = len(self.states)
        handle()
        session.cancel()
        self.assertEqual(len(self.states), count)

    def test_cancel_after_completion_is_noop(self) -> None:
        session = self.make([FakeStreamResponse([sse(chunk("Hi"), "[DONE]")])])
        handle = session.send("Hello")
        session.ui.pump()
        handle()
        self.assertEqual(session.last_outcome, SessionState.COMPLETED)
        self.assertEqual(session.messages[-1].content, "Hi")

    def test_stale_handle_does_not_cancel_next_turn(self) -> None:
        spawn = DeferredSpawn()
        session = self.make([FakeStreamResponse([]), FakeStreamResponse([])],
                            spawn=spawn)
        first = session.send("one")
        first()
        session.send("two")
        first()
        self.assertEqual(session.state, SessionState.SENDING)


# -----------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------

class TestErrors(_Base):

    def test_http_error_before_stream(self) -> None:
        session = self.make([api_error("Internal Server Error")])
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.send("Hello")
        session.ui.pump()
        self.assertEqual(len(session.messages), 1)
        self.assertEqual(session.last_outcome, SessionState.ERRORED)
        self.assertEqual(session.state, SessionState.IDLE)
        self.assertIn("Internal Server Error", session.last_error)
        self.assertEqual(len(self.errors), 1)

    def test_transport_error_keeps_partial_content(self) -> None:
        response = FakeStreamResponse([sse(chunk("Hal"))],
                                      error=requests.ConnectionError("reset by peer"))
        session = self.make([response])
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.send("Hello")
        session.ui.pump()
        assistant = session.messages[-1]
        self.assertEqual(assistant.content, "Hal")
        self.assertTrue(assistant.sealed)
        self.assertEqual(session.last_outcome, SessionState.ERRORED)
        self.assertIn("reset by peer", session.last_error)

    def test_error_event_in_stream(self) -> None:
        response = FakeStreamResponse([
            sse(chunk("Let me"), json.dumps({"type": "error", "message": "quota exceeded"}),
                chunk("ignored")),
        ])
        session = self.make([response])
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.send("Hello")
            session.ui.pump()
        self.assertEqual(session.messages[-1].content, "Let me")
        self.assertEqual(session.last_outcome, SessionState.ERRORED)
        self.assertIn("quota exceeded", session.last_error)

    def test_send_allowed_after_error(self) -> None:
        session = self.make([api_error("boom"),
                             FakeStreamResponse([sse(chunk("ok"), "[DONE]")])])
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.send("one")
        session.ui.pump()
        session.send("two")
        session.ui.pump()
        self.assertEqual(session.messages[-1].content, "ok")
        self.assertEqual(session.last_outcome, SessionState.COMPLETED)


# -----------------------------------------------------------------------
# History reset
# -----------------------------------------------------------------------

class TestClearHistory(_Base):

    def test_local_clear(self) -> None:
        session = self.make([FakeStreamResponse([sse(chunk("Hi"), "[DONE]")])])
        session.send("Hello")
        session.ui.pump()
        session.clear_history()
        self.assertEqual(session.messages, [])
        self.assertEqual(session.history.next_page, 1)

    def test_remote_clear_waits_for_backend(self) -> None:
        spawn = DeferredSpawn()
        session = self.make([FakeStreamResponse([])], spawn=spawn)
        session.send("Hello")
        session.clear_history(delete_remote=True)
        self.assertTrue(session.clearing)
        self.assertEqual(session.last_outcome, SessionState.CANCELLED)
        self.assertEqual(len(session.messages), 1)
        spawn.run_all()
        session.ui.pump()
        self.assertFalse(session.clearing)
        self.assertEqual(session.messages, [])
        self.assertEqual(self.api.deleted, 1)

    def test_send_refused_while_remote_clear_pending(self) -> None:
        spawn = DeferredSpawn()
        session = self.make([FakeStreamResponse([sse(chunk("Hi"), "[DONE]")]),
                             FakeStreamResponse([sse(chunk("Sure"), "[DONE]")])],
                            spawn=spawn)
        session.send("Hello")
        spawn.run_all()
        session.ui.pump()

        session.clear_history(delete_remote=True)
        with self.assertRaises(SendRefused) as ctx:
            session.send("new question")
        self.assertEqual(ctx.exception.reason, "clearing")
        self.assertEqual(len(self.api.bodies), 1)

        spawn.run_all()
        session.ui.pump()
        self.assertEqual(session.messages, [])

        session.send("new question")
        spawn.run_all()
        session.ui.pump()
        self.assertEqual([m.content for m in session.messages],
                         ["new question", "Sure"])

    def test_remote_clear_failure_keeps_messages(self) -> None:
        session = self.make([FakeStreamResponse([sse(chunk("Hi"), "[DONE]")])])
        session.send("Hello")
        session.ui.pump()
        self.api.delete_error = api_error("forbidden", 403)
        with self.assertLogs("storefront_chat", level="ERROR"):
            session.clear_history(delete_remote=True)
        session.ui.pump()
        self.assertFalse(session.clearing)
        self.assertEqual(len(session.messages), 2)
        self.assertIn("Could not clear history", session.last_error)


if __name__ == "__main__":
    unittest.main()
