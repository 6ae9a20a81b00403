"""Unit tests for settings.conf loading."""

import os
import tempfile
import textwrap
import unittest
from unittest import mock

from config import load_config


class TestLoadConfig(unittest.TestCase):

    def _write(self, content):
        fd, path = tempfile.mkstemp(suffix='.conf')
        with os.fdopen(fd, 'w') as f:
            f.write(textwrap.dedent(content))
        self.addCleanup(os.remove, path)
        return path

    def test_defaults(self):
        config = load_config(os.devnull)
        self.assertEqual(config['sample_rate'], 16000)
        self.assertEqual(config['frame_size'], 480)
        self.assertEqual(config['hangover_ms'], 400)
        self.assertEqual(config['bias_token_budget'], 50)
        self.assertEqual(config['correction_backend'], 'rules')
        self.assertFalse(config['speculative_enabled'])
        self.assertIn('kubernetes', config['bias_vocabulary'])
        self.assertIn('thanks for watching', config['hallucination_phrases'])
        self.assertEqual(config['ambiguous_no_speech_threshold'], 0.3)
        self.assertFalse(config['revisions_to_clipboard'])

    def test_overrides_and_tables(self):
        path = self._write("""
            [vad]
            hangover_ms = 600
            classifier = Energy

            [bias]
            vocabulary = tokio, serde ,  axum

            [spoken_punctuation]
            arrow = ->

            [word_replacements]
            sequel = SQL

            [hallucinations]
            you = false
            thanks for listening = true
        """)
        config = load_config(path)
        self.assertEqual(config['hangover_ms'], 600)
        self.assertEqual(config['vad_classifier'], 'energy')
        self.assertEqual(config['bias_vocabulary'], ['tokio', 'serde', 'axum'])
        self.assertTrue(any('arrow' in pattern for pattern, _ in config['spoken_punctuation']))
        self.assertEqual(config['word_replacements']['sequel'], 'SQL')
        self.assertNotIn('you', config['hallucination_phrases'])
        self.assertIn('thanks for listening', config['hallucination_phrases'])

    def test_longer_phrases_first(self):
        patterns = [p for p, _ in load_config(os.devnull)['spoken_punctuation']]
        self.assertLess(patterns.index(next(p for p in patterns if 'open\\ parenthesis' in p)),
                        patterns.index(next(p for p in patterns if 'open\\ paren\\b' in p)))

    def test_invalid_frame_ms(self):
        path = self._write("""
            [audio]
            frame_ms = 25
        """)
        with self.assertRaises(ValueError):
            load_config(path)

    def test_history_path_follows_xdg(self):
        with mock.patch.dict(os.environ, {'XDG_DATA_HOME': '/tmp/xdg'}):
            config = load_config(os.devnull)
        self.assertEqual(config['history_path'], '/tmp/xdg/codevoice/history.jsonl')


if __name__ == '__main__':
    unittest.main()
