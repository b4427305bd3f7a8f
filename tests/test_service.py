import json
import random
import tempfile
import unittest
from pathlib import Path

from companion.config import MAX_UTTERANCE_CHARS
from companion.errors import AuthorizationError, NotFoundError, PersistenceError, SessionClosedError, ValidationError
from companion.extractor import EXTRACTION_INSTRUCTIONS
from companion.metrics import MetricsCollector
from companion.models import ExtractionStatus, SessionStatus
from companion.policy import CLOSING_LINES, CRISIS_SUPPORT_LINE, WARM_FALLBACK
from companion.review import REVIEW_INSTRUCTIONS
from companion.service import ConversationService
from companion.storage import SqliteConversationStore


class _RoutedGenerator:
    """Answers extraction, reply and review prompts from separate queues and records which ran."""

    def __init__(self, extractions=(), replies=(), reviews=()):
        self.queues = {
            "extraction": list(extractions),
            "reply": list(replies),
            "review": list(reviews),
        }
        self.calls = []

    def complete(self, messages, *, temperature, max_tokens):
        head = messages[0].content
        if head == EXTRACTION_INSTRUCTIONS:
            kind = "extraction"
        elif head == REVIEW_INSTRUCTIONS:
            kind = "review"
        else:
            kind = "reply"
        self.calls.append(kind)
        queue = self.queues[kind]
        value = queue.pop(0) if queue else ""
        if isinstance(value, Exception):
            raise value
        return value


class _FailingAppendStore(SqliteConversationStore):
    def append_messages(self, session_id, messages, status=None):
        raise PersistenceError("disk full")


def _extraction(emotion, intensity, technique="grounding", risk=0, themes=None):
    return json.dumps(
        {
            "emotion": emotion,
            "intensity": intensity,
            "themes": themes or [f"{emotion} about exams"],
            "distortions": ["catastrophizing"],
            "techniques": [technique, "active_listening"],
            "focus": "exam_anxiety",
            "risk_score": risk,
        }
    )


class _ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "conversations.sqlite"
        self.store = SqliteConversationStore(self.db_path)
        self.metrics = MetricsCollector(Path(self.tmp.name) / "metrics")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def _service(self, gen, store=None):
        return ConversationService(
            store or self.store,
            gen,
            rng=random.Random(11),
            metrics=self.metrics,
        )


class TestTurnPipeline(_ServiceTestCase):
    def test_anxious_exam_then_thanks_completes_the_session(self):
        gen = _RoutedGenerator(
            extractions=[_extraction("anxious", 8), _extraction("relieved", 3, "cognitive_reframing")],
            replies=["That sounds really stressful. What part of the exam worries you most?"],
        )
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        first = svc.send_turn(sid, "owner-1", "I have an exam tomorrow and I'm so anxious I can't sleep")
        self.assertEqual(first.reply_source, "model")
        self.assertFalse(first.conversation_complete)
        self.assertEqual(first.status, SessionStatus.ACTIVE)
        self.assertEqual(first.assessment.emotion, "anxious")
        self.assertEqual(first.memory_summary["last_emotion"], "anxious")
        self.assertEqual(first.memory_summary["last_technique"], "grounding")

        second = svc.send_turn(sid, "owner-1", "thanks, I feel better now")
        self.assertTrue(second.conversation_complete)
        self.assertEqual(second.status, SessionStatus.COMPLETED)
        self.assertEqual(second.reply_source, "closing")
        self.assertIn(second.reply, CLOSING_LINES)
        self.assertEqual(gen.calls, ["extraction", "reply", "extraction"])

        history = svc.get_history(sid, "owner-1")
        self.assertEqual(history["status"], "completed")
        self.assertEqual(
            [m["role"] for m in history["messages"]],
            ["user", "assistant", "user", "assistant"],
        )
        self.assertEqual(history["messages"][2]["content"], "thanks, I feel better now")
        metadata = history["messages"][1]["metadata"]
        self.assertEqual(metadata["reply_source"], "model")
        self.assertEqual(metadata["technique"], "grounding")
        self.assertEqual(metadata["assessment"]["emotion"], "anxious")
        self.assertTrue(history["messages"][3]["metadata"]["conversation_complete"])
        self.assertEqual(history["progress_summary"]["session_count"], 2)
        self.assertEqual(history["progress_summary"]["trend"], "improving")

        with self.assertRaises(SessionClosedError):
            svc.send_turn(sid, "owner-1", "one more thing")
        self.assertEqual(len(gen.calls), 3)

        summary = self.metrics.get_summary()
        self.assertEqual(summary["replies"]["by_source"], {"model": 1, "closing": 1})
        self.assertEqual(summary["replies"]["closed_sessions"], 1)
        self.assertEqual(summary["errors"]["count"], 1)

    def test_rejections_happen_before_any_generator_call(self):
        gen = _RoutedGenerator()
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        with self.assertRaises(NotFoundError):
            svc.send_turn("ghost", "owner-1", "hello")
        with self.assertRaises(AuthorizationError):
            svc.send_turn(sid, "owner-2", "hello")
        for bad in ("", "   ", None, 42, "x" * (MAX_UTTERANCE_CHARS + 1)):
            with self.assertRaises(ValidationError):
                svc.send_turn(sid, "owner-1", bad)
        self.assertEqual(gen.calls, [])
        self.assertEqual(self.store.find_session_by_id(sid).messages, [])

    def test_generation_failures_still_produce_a_reply(self):
        gen = _RoutedGenerator(extractions=["no json here"], replies=[RuntimeError("model offline")])
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        result = svc.send_turn(sid, "owner-1", "everything is a mess")
        self.assertEqual(result.reply, WARM_FALLBACK)
        self.assertEqual(result.reply_source, "fallback")
        self.assertEqual(result.assessment.extraction_status, ExtractionStatus.FALLBACK)

        history = svc.get_history(sid, "owner-1")
        self.assertEqual(len(history["messages"]), 2)
        self.assertIsNone(history["progress_summary"])
        self.assertEqual(history["memory_summary"]["recent_emotions"], [])

    def test_crisis_turn_never_closes_and_carries_support_line(self):
        gen = _RoutedGenerator(
            extractions=[_extraction("hopeless", 9, risk=5)],
            replies=["I'm really sorry you're hurting this much."],
        )
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        result = svc.send_turn(sid, "owner-1", "thanks for nothing, I want to die")
        self.assertFalse(result.conversation_complete)
        self.assertEqual(result.status, SessionStatus.ACTIVE)
        self.assertTrue(result.reply.endswith(CRISIS_SUPPORT_LINE))
        self.assertEqual(gen.calls, ["extraction", "reply"])
        self.assertEqual(self.store.find_session_by_id(sid).status, SessionStatus.ACTIVE)

    def test_giving_up_message_gets_crisis_reply_instead_of_farewell(self):
        gen = _RoutedGenerator(extractions=[_extraction("hopeless", 8)], replies=["That sounds so heavy."])
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        result = svc.send_turn(sid, "owner-1", "I'm done with everything")
        self.assertFalse(result.conversation_complete)
        self.assertEqual(result.status, SessionStatus.ACTIVE)
        self.assertNotIn(result.reply, CLOSING_LINES)
        self.assertTrue(result.reply.endswith(CRISIS_SUPPORT_LINE))
        self.assertEqual(gen.calls, ["extraction", "reply"])

    def test_high_risk_score_alone_blocks_closing(self):
        gen = _RoutedGenerator(extractions=[_extraction("numb", 9, risk=4.5)], replies=[RuntimeError("down")])
        svc = self._service(gen)
        sid = svc.create_session("owner-1")

        result = svc.send_turn(sid, "owner-1", "bye")
        self.assertFalse(result.conversation_complete)
        self.assertEqual(result.reply_source, "crisis_fallback")

    def test_persistence_failure_evicts_cached_state(self):
        failing = _FailingAppendStore(self.db_path)
        self.addCleanup(failing.close)
        gen = _RoutedGenerator(extractions=[_extraction("sad", 6)], replies=["I hear you."])
        svc = self._service(gen, store=failing)
        sid = svc.create_session("owner-1")

        with self.assertRaises(PersistenceError):
            svc.send_turn(sid, "owner-1", "I feel low today")
        self.assertNotIn(sid, svc.memory_store)
        self.assertNotIn(sid, svc.progress)
        self.assertEqual(failing.find_session_by_id(sid).messages, [])
        self.assertEqual(self.metrics.get_summary()["errors"]["count"], 1)

    def test_failed_closing_write_leaves_no_partial_turn(self):
        gen = _RoutedGenerator(extractions=[_extraction("relieved", 3), _extraction("relieved", 3)])
        svc = self._service(gen)
        sid = svc.create_session("owner-1")
        with self.store._connection() as conn:
            conn.execute(
                """
                CREATE TRIGGER refuse_completion BEFORE UPDATE OF status ON sessions
                WHEN NEW.status = 'completed'
                BEGIN SELECT RAISE(ABORT, 'disk full'); END
                """
            )

        with self.assertRaises(PersistenceError):
            svc.send_turn(sid, "owner-1", "thanks, bye")
        stored = self.store.find_session_by_id(sid)
        self.assertEqual(stored.messages, [])
        self.assertEqual(stored.status, SessionStatus.ACTIVE)

        with self.store._connection() as conn:
            conn.execute("DROP TRIGGER refuse_completion")
        retried = svc.send_turn(sid, "owner-1", "thanks, bye")
        self.assertTrue(retried.conversation_complete)
        stored = self.store.find_session_by_id(sid)
        self.assertEqual(len(stored.messages), 2)
        self.assertEqual(stored.status, SessionStatus.COMPLETED)

    def test_cold_restart_rebuilds_the_same_state(self):
        gen = _RoutedGenerator(
            extractions=[_extraction("anxious", 8), _extraction("worried", 6, "journaling")],
            replies=["That sounds hard.", "What helped last time?"],
        )
        svc = self._service(gen)
        sid = svc.create_session("owner-1")
        svc.send_turn(sid, "owner-1", "My name is Sam and exams scare me")
        svc.send_turn(sid, "owner-1", "I keep thinking I'll fail")
        warm = svc.get_history(sid, "owner-1")

        restarted = self._service(_RoutedGenerator())
        cold = restarted.get_history(sid, "owner-1")
        self.assertEqual(cold["memory_summary"], warm["memory_summary"])
        self.assertEqual(cold["progress_summary"], warm["progress_summary"])
        self.assertEqual(cold["memory_summary"]["display_name"], "Sam")


class TestSessionOperations(_ServiceTestCase):
    def test_create_session_validates_owner(self):
        svc = self._service(_RoutedGenerator())
        with self.assertRaises(ValidationError):
            svc.create_session("  ")
        self.assertEqual(svc.create_session("owner-1", "chosen-id"), "chosen-id")

    def test_history_requires_ownership(self):
        svc = self._service(_RoutedGenerator())
        sid = svc.create_session("owner-1")
        with self.assertRaises(AuthorizationError):
            svc.get_history(sid, "owner-2")
        with self.assertRaises(NotFoundError):
            svc.get_history("ghost", "owner-1")

    def test_list_sessions_rows(self):
        long_reply = "I'm listening. " * 20
        gen = _RoutedGenerator(extractions=[_extraction("tired", 5)], replies=[long_reply])
        svc = self._service(gen)
        used = svc.create_session("owner-1")
        empty = svc.create_session("owner-1")
        svc.create_session("owner-2")
        svc.send_turn(used, "owner-1", "so tired after work every day")

        rows = {row["session_id"]: row for row in svc.list_sessions("owner-1")}
        self.assertEqual(set(rows), {used, empty})
        self.assertEqual(rows[used]["message_count"], 2)
        self.assertFalse(rows[used]["degenerate"])
        self.assertLessEqual(len(rows[used]["last_message_preview"]), 100)
        self.assertEqual(rows[used]["memory_summary"]["last_emotion"], "tired")
        self.assertTrue(rows[empty]["degenerate"])
        self.assertEqual(rows[empty]["last_message_preview"], "")

    def test_review_session(self):
        review_payload = {
            "themes": ["exam stress"],
            "emotional_summary": "Anxious, then calmer.",
            "areas_of_concern": ["poor sleep"],
            "recommendations": ["wind-down routine"],
            "progress_indicators": ["tried breathing"],
        }
        gen = _RoutedGenerator(
            extractions=[_extraction("anxious", 7)],
            replies=["That sounds hard."],
            reviews=[json.dumps(review_payload)],
        )
        svc = self._service(gen)
        sid = svc.create_session("owner-1")
        svc.send_turn(sid, "owner-1", "I can't sleep before exams")

        review = svc.review_session(sid, "owner-1")
        self.assertTrue(review.generated)
        self.assertEqual(review.areas_of_concern, ["poor sleep"])
        with self.assertRaises(AuthorizationError):
            svc.review_session(sid, "owner-2")

    def test_purge_empty_sessions(self):
        svc = self._service(_RoutedGenerator())
        stale = svc.create_session("owner-1")
        fresh = svc.create_session("owner-1")
        with self.store._connection() as conn:
            conn.execute(
                "UPDATE sessions SET created_at = ? WHERE session_id = ?",
                ("2000-01-01T00:00:00+00:00", stale),
            )
        self.assertEqual(svc.purge_empty_sessions(), 1)
        self.assertEqual([r["session_id"] for r in svc.list_sessions("owner-1")], [fresh])


if __name__ == "__main__":
    unittest.main()
