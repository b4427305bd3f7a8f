import unittest

from companion.errors import ExtractionMalformed
from companion.policy import DEFAULT_POLICY
from companion.sanitizer import (
    clean_json_payload,
    contains_unsafe_content,
    decode_json_object,
    ensure_terminal_punctuation,
    remove_persona_leaks,
    segment_paragraphs,
    soften_directives,
    split_sentences,
    to_plain_prose,
)


class TestJsonPayloadCleaning(unittest.TestCase):
    def test_strips_fences_and_reasoning(self):
        raw = '<think>let me see</think>\n```json\n{"emotion": "sad"}\n```'
        self.assertEqual(clean_json_payload(raw), '{"emotion": "sad"}')

    def test_slices_object_out_of_surrounding_prose(self):
        raw = 'Sure! Here is the analysis: {"intensity": 4} Hope that helps.'
        self.assertEqual(decode_json_object(raw), {"intensity": 4})

    def test_control_characters_are_removed(self):
        raw = '{"emotion": "calm\x07"}'
        self.assertEqual(decode_json_object(raw), {"emotion": "calm"})

    def test_empty_payload_raises(self):
        with self.assertRaises(ExtractionMalformed):
            decode_json_object("   ")

    def test_invalid_json_raises(self):
        with self.assertRaises(ExtractionMalformed):
            decode_json_object("{emotion: sad,,}")

    def test_non_object_raises(self):
        with self.assertRaises(ExtractionMalformed):
            decode_json_object("[1, 2, 3]")


class TestProseCleanup(unittest.TestCase):
    def test_markdown_is_flattened(self):
        raw = "## Feeling stuck\n\n**That sounds hard.** Try _one_ small step:\n- a short walk\n- some water"
        text = to_plain_prose(raw)
        self.assertNotIn("#", text)
        self.assertNotIn("**", text)
        self.assertNotIn("- ", text)
        self.assertIn("That sounds hard.", text)
        self.assertIn("one small step", text)

    def test_table_separators_are_dropped(self):
        raw = "| Step | Idea |\n|---|---|\n| 1 | Breathe |"
        text = to_plain_prose(raw)
        self.assertNotIn("|", text)
        self.assertNotIn("---", text)
        self.assertIn("Breathe", text)

    def test_terminal_punctuation_added_once(self):
        self.assertEqual(ensure_terminal_punctuation("I hear you"), "I hear you.")
        self.assertEqual(ensure_terminal_punctuation("Really?"), "Really?")
        self.assertEqual(ensure_terminal_punctuation('He said "ok."'), 'He said "ok."')
        self.assertEqual(ensure_terminal_punctuation("and then,"), "and then.")

    def test_sentence_split(self):
        self.assertEqual(
            split_sentences("One. Two!  Three?\nFour"),
            ["One.", "Two!", "Three?", "Four"],
        )

    def test_paragraphs_hold_at_most_three_sentences(self):
        text = " ".join(f"Sentence {i}." for i in range(1, 8))
        paragraphs = segment_paragraphs(text, 3).split("\n\n")
        self.assertEqual(len(paragraphs), 3)
        for paragraph in paragraphs:
            self.assertLessEqual(len(split_sentences(paragraph)), 3)
            self.assertTrue(paragraph.endswith("."))

    def test_empty_text_segments_to_empty(self):
        self.assertEqual(segment_paragraphs(""), "")


class TestPolicyFilters(unittest.TestCase):
    def test_denylist_catches_medication_and_dosage(self):
        self.assertTrue(contains_unsafe_content("Maybe ask about sertraline.", DEFAULT_POLICY))
        self.assertTrue(contains_unsafe_content("Take 50 mg before bed.", DEFAULT_POLICY))
        self.assertTrue(contains_unsafe_content("It sounds like you have clinical depression.", DEFAULT_POLICY))

    def test_denylist_allows_ordinary_support(self):
        text = "That sounds exhausting. Would a short walk help you reset?"
        self.assertFalse(contains_unsafe_content(text, DEFAULT_POLICY))

    def test_persona_leak_removed_and_sentence_recapitalized(self):
        text = remove_persona_leaks("As an AI, i can't feel stress. But I hear you.", DEFAULT_POLICY)
        self.assertNotIn("as an ai", text.lower())
        self.assertTrue(text.startswith("I can't feel stress."))

    def test_directives_are_softened_preserving_case(self):
        text = soften_directives("You should rest. Maybe you need to eat.", DEFAULT_POLICY)
        self.assertEqual(text, "You might consider rest. Maybe you might try to eat.")


if __name__ == "__main__":
    unittest.main()
