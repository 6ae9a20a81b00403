"""Unit tests for hallucination suppression."""

import os
import unittest

from config import load_config
from hallucination import HallucinationFilter, collapse_repetitions


def _make_filter(**overrides):
    config = load_config(os.devnull)
    config.update(overrides)
    return HallucinationFilter(config)


class TestSegments(unittest.TestCase):

    def test_boilerplate_suppressed(self):
        f = _make_filter()
        self.assertEqual(f.check_segment(" Thanks for watching!"), "boilerplate")
        self.assertEqual(f.check_segment("Thanks for watching. Thank you."), "boilerplate")
        self.assertEqual(f.check_segment("[BLANK_AUDIO]"), "boilerplate")

    def test_dictated_thank_you_kept_when_decoder_heard_speech(self):
        f = _make_filter()
        self.assertIsNone(f.check_segment("Thank you.", no_speech_prob=0.02, avg_logprob=-0.2))
        self.assertIsNone(f.check_segment("you", no_speech_prob=0.1, avg_logprob=-0.3))

    def test_ambiguous_phrase_dropped_when_likely_silence(self):
        f = _make_filter()
        self.assertEqual(f.check_segment("Thank you. Thank you.", no_speech_prob=0.45, avg_logprob=-0.4),
                         "boilerplate")
        self.assertEqual(f.check_segment("you", no_speech_prob=0.5, avg_logprob=-0.5), "boilerplate")

    def test_real_speech_containing_phrase_kept(self):
        f = _make_filter()
        self.assertIsNone(f.check_segment("thank you for the review, merge it"))
        self.assertIsNone(f.check_segment("create a struct called user config"))

    def test_no_speech_needs_both_signals(self):
        f = _make_filter()
        self.assertEqual(f.check_segment("hello", no_speech_prob=0.9, avg_logprob=-1.5), "no_speech")
        self.assertIsNone(f.check_segment("hello", no_speech_prob=0.9, avg_logprob=-0.2))
        self.assertIsNone(f.check_segment("hello", no_speech_prob=0.1, avg_logprob=-1.5))

    def test_empty_segment(self):
        self.assertEqual(_make_filter().check_segment("   "), "empty")

    def test_filter_segments_records_provenance(self):
        f = _make_filter()
        kept, suppressed = f.filter_segments([
            ("impl Display for Token", 0.0, -0.1),
            ("Thanks for watching.", 0.0, -0.1),
        ])
        self.assertEqual(kept, ["impl Display for Token"])
        self.assertEqual(len(suppressed), 1)
        self.assertEqual(suppressed[0].reason, "boilerplate")

    def test_configured_phrases_replace_defaults(self):
        f = _make_filter(hallucination_phrases=["subscribe now"])
        self.assertEqual(f.check_segment("Subscribe now!"), "boilerplate")
        self.assertIsNone(f.check_segment("thank you"))


class TestRepetition(unittest.TestCase):

    def test_loop_truncated_after_max_repeats(self):
        words = "the the the the the the end".split()
        kept, removed = collapse_repetitions(words)
        self.assertEqual(kept, ["the", "the", "the", "end"])
        self.assertEqual(removed, 3)

    def test_repeats_compared_without_punctuation(self):
        kept, removed = collapse_repetitions(["ok,", "OK", "ok.", "ok", "done"])
        self.assertEqual(kept, ["ok,", "OK", "ok.", "done"])
        self.assertEqual(removed, 1)

    def test_normal_text_untouched(self):
        words = "let x equal x plus x".split()
        self.assertEqual(collapse_repetitions(words), (words, 0))


if __name__ == '__main__':
    unittest.main()
