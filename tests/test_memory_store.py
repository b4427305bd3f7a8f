import unittest

from companion.config import MEMORY_EMOTION_LIMIT, MEMORY_RECENT_TURN_LIMIT, TRUST_BASELINE, TRUST_NAME_DISCLOSURE_BONUS
from companion.errors import NotFoundError
from companion.memory_store import (
    SessionLocks,
    SessionMemoryStore,
    extract_display_name,
    rebuild_memory,
    record_exchange,
)
from companion.models import Assessment, ExtractionStatus, Message, Session, SessionMemory


def _assessment(emotion="anxious", intensity=7, technique="grounding", status=ExtractionStatus.COMPLETE):
    return Assessment(
        emotion=emotion,
        intensity=intensity,
        themes=[f"{emotion} about exams", "sleep"],
        distortions=["catastrophizing"],
        techniques=[technique],
        focus="exam_anxiety",
        extraction_status=status,
    )


def _turns():
    return [
        ("My name is sam and exams scare me", _assessment("anxious", 8, "grounding"), "That sounds heavy, Sam."),
        ("I keep thinking I'll fail", _assessment("worried", 7, "cognitive_reframing"), "What would you tell a friend?"),
        ("idk", Assessment.fallback(), "I'm here with you. What's been on your mind?"),
        ("I tried breathing, it helped a bit", _assessment("hopeful", 4, "breathing_exercise"), "I'm glad it helped."),
    ]


def _session_from(turns, session_id="s-mem"):
    messages = []
    for user_text, assessment, reply in turns:
        messages.append(Message(role="user", content=user_text))
        messages.append(Message(role="assistant", content=reply, metadata={"assessment": assessment.to_dict()}))
    return Session(session_id=session_id, owner_id="owner-1", messages=messages)


class TestDisplayName(unittest.TestCase):
    def test_detects_common_introductions(self):
        self.assertEqual(extract_display_name("hi, my name is sam"), "Sam")
        self.assertEqual(extract_display_name("Call me Alex please"), "Alex")
        self.assertEqual(extract_display_name("I'm Priya and I'm stressed"), "Priya")

    def test_ignores_states_that_look_like_names(self):
        self.assertIsNone(extract_display_name("I'm tired"))
        self.assertIsNone(extract_display_name("I'm So done"))
        self.assertIsNone(extract_display_name("nothing to see here"))

    def test_call_me_with_a_time_is_not_a_name(self):
        self.assertIsNone(extract_display_name("please call me later tonight"))
        self.assertIsNone(extract_display_name("call me when you can"))
        self.assertIsNone(extract_display_name("Call me Later"))

        memory = SessionMemory(session_id="s-name")
        record_exchange(memory, "can you call me back tomorrow", "Of course.")
        self.assertIsNone(memory.preferences.display_name)
        self.assertEqual(memory.context.trust, TRUST_BASELINE)


class TestMemoryRebuild(unittest.TestCase):
    def test_rebuild_is_deterministic(self):
        session = _session_from(_turns())
        self.assertEqual(rebuild_memory(session), rebuild_memory(session))

    def test_rebuild_matches_incremental_updates(self):
        incremental = SessionMemory(session_id="s-mem")
        for user_text, assessment, reply in _turns():
            if assessment.carries_signal:
                incremental.absorb_assessment(assessment)
            record_exchange(incremental, user_text, reply)

        cold = rebuild_memory(_session_from(_turns()))
        self.assertEqual(cold, incremental)

    def test_rebuild_contents(self):
        memory = rebuild_memory(_session_from(_turns()))
        self.assertEqual(memory.emotions, ["anxious", "worried", "hopeful"])
        self.assertEqual(memory.techniques, ["grounding", "cognitive_reframing", "breathing_exercise"])
        self.assertEqual(memory.preferences.display_name, "Sam")
        self.assertEqual(memory.context.trust, TRUST_BASELINE + TRUST_NAME_DISCLOSURE_BONUS)
        self.assertEqual(memory.context.last_emotion, "hopeful")
        self.assertEqual(memory.turn_count, 4)
        self.assertEqual(memory.context.progress, 20)

    def test_long_sessions_are_truncated_oldest_first(self):
        turns = [(f"message {i}", _assessment(f"e{i}", 5), f"reply {i}") for i in range(30)]
        memory = rebuild_memory(_session_from(turns))
        self.assertEqual(len(memory.emotions), MEMORY_EMOTION_LIMIT)
        self.assertEqual(memory.emotions[-1], "e29")
        self.assertEqual(memory.emotions[0], f"e{30 - MEMORY_EMOTION_LIMIT}")
        self.assertEqual(len(memory.recent_turns), MEMORY_RECENT_TURN_LIMIT)
        self.assertEqual(memory.recent_turns[-1]["content"], "reply 29")
        self.assertEqual(memory.context.progress, 100)

    def test_malformed_metadata_is_skipped(self):
        session = Session(
            session_id="s-bad",
            owner_id="owner-1",
            messages=[
                Message(role="user", content="hello"),
                Message(role="assistant", content="hi", metadata={"assessment": "not-a-dict"}),
                Message(role="user", content="again"),
                Message(role="assistant", content="yes", metadata=None),
            ],
        )
        memory = rebuild_memory(session)
        self.assertEqual(memory.emotions, [])
        self.assertEqual(len(memory.recent_turns), 4)
        self.assertEqual(memory.turn_count, 2)


class TestSessionMemoryStore(unittest.TestCase):
    def setUp(self):
        self.sessions = {
            "a": _session_from(_turns(), "a"),
            "b": _session_from(_turns()[:1], "b"),
            "c": _session_from([], "c"),
        }
        self.loads = []

        def loader(session_id):
            self.loads.append(session_id)
            return self.sessions.get(session_id)

        self.store = SessionMemoryStore(loader, max_sessions=2)

    def test_hit_returns_the_same_instance(self):
        first = self.store.get("a")
        second = self.store.get("a")
        self.assertIs(first, second)
        self.assertEqual(self.loads, ["a"])

    def test_preloaded_session_skips_the_loader(self):
        memory = self.store.get("b", self.sessions["b"])
        self.assertEqual(memory.session_id, "b")
        self.assertEqual(self.loads, [])

    def test_unknown_session_raises(self):
        with self.assertRaises(NotFoundError):
            self.store.get("missing")

    def test_evict_forces_rebuild(self):
        first = self.store.get("a")
        self.store.evict("a")
        self.assertNotIn("a", self.store)
        second = self.store.get("a")
        self.assertIsNot(first, second)
        self.assertEqual(first, second)

    def test_capacity_evicts_least_recently_used(self):
        self.store.get("a")
        self.store.get("b")
        self.store.get("a")
        self.store.get("c")
        self.assertEqual(len(self.store), 2)
        self.assertIn("a", self.store)
        self.assertNotIn("b", self.store)


class TestSessionLocks(unittest.TestCase):
    def test_same_session_shares_a_reentrant_lock(self):
        locks = SessionLocks()
        self.assertIs(locks.for_session("x"), locks.for_session("x"))
        self.assertIsNot(locks.for_session("x"), locks.for_session("y"))
        with locks.hold("x"):
            with locks.hold("x"):
                pass


if __name__ == "__main__":
    unittest.main()
