"""Unit tests for the JSONL transcription history."""

import json
import os
import tempfile
import unittest

from history import HistoryEntry, TranscriptionHistory
from models import PipelineResult, TranscriptionHypothesis


def _result(text, utterance_id=1, model='distil-large-v3', created_at=1700000000.0):
    hyp = TranscriptionHypothesis(utterance_id, text.lower(), model=model, audio_seconds=1.25)
    return PipelineResult(utterance_id=utterance_id, text=text, hypothesis=hyp, language='rust',
                          correction_model='rules', created_at=created_at)


class TestTranscriptionHistory(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, 'data', 'history.jsonl')
        self.history = TranscriptionHistory(self.path)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_append_records_provenance(self):
        entry = self.history.append(_result("let x = 5;"))
        self.assertTrue(os.path.exists(self.path))
        with open(self.path) as f:
            stored = json.loads(f.readline())
        self.assertEqual(stored['id'], entry.id)
        self.assertEqual(stored['text'], "let x = 5;")
        self.assertEqual(stored['raw_text'], "let x = 5;".lower())
        self.assertEqual(stored['duration_ms'], 1250)
        self.assertEqual(stored['timestamp'], 1700000000000)
        self.assertEqual(stored['model'], 'distil-large-v3')

    def test_load_newest_first_with_pagination(self):
        for i in range(5):
            self.history.append(_result(f"entry {i}", created_at=1000.0 + i))
        page = self.history.load(limit=2)
        self.assertEqual([e.text for e in page.entries], ["entry 4", "entry 3"])
        self.assertEqual(page.total, 5)
        self.assertTrue(page.has_more)
        last = self.history.load(limit=2, offset=4)
        self.assertEqual([e.text for e in last.entries], ["entry 0"])
        self.assertFalse(last.has_more)

    def test_search_and_model_filter(self):
        self.history.append(_result("struct UserConfig", model='small'))
        self.history.append(_result("fn main()", model='large-v3'))
        self.history.append(_result("impl UserConfig", model='large-v3'))
        self.assertEqual(self.history.load(search='userconfig').total, 2)
        self.assertEqual(self.history.load(search='userconfig', model='large-v3').total, 1)
        self.assertEqual(self.history.models(), ['large-v3', 'small'])

    def test_corrupted_lines_skipped(self):
        self.history.append(_result("good one"))
        with open(self.path, 'a') as f:
            f.write("{not json\n")
            f.write("[1, 2]\n")
        self.history.append(_result("good two"))
        self.assertEqual(self.history.load().total, 2)

    def test_unknown_fields_ignored(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write(json.dumps({'text': 'old', 'id': 'abc', 'timestamp': 1, 'extra': True}) + '\n')
        page = self.history.load()
        self.assertEqual(page.entries[0].id, 'abc')

    def test_delete_and_clear(self):
        first = self.history.append(_result("one"))
        self.history.append(_result("two"))
        self.assertTrue(self.history.delete(first.id))
        self.assertFalse(self.history.delete(first.id))
        self.assertEqual([e.text for e in self.history.load().entries], ["two"])
        self.history.clear()
        self.assertEqual(self.history.load().total, 0)
        self.assertFalse(os.path.exists(os.path.join(os.path.dirname(self.path), '.history.jsonl.tmp')))

    def test_max_entries_keeps_newest(self):
        history = TranscriptionHistory(self.path, max_entries=3)
        for i in range(5):
            history.append(_result(f"entry {i}", created_at=1000.0 + i))
        page = history.load()
        self.assertEqual(page.total, 3)
        self.assertEqual([e.text for e in page.entries], ["entry 4", "entry 3", "entry 2"])

    def test_missing_file_is_empty(self):
        page = self.history.load()
        self.assertEqual((page.entries, page.total, page.has_more), ([], 0, False))
        self.assertEqual(self.history.models(), [])

    def test_entry_defaults(self):
        a, b = HistoryEntry("x"), HistoryEntry("y")
        self.assertNotEqual(a.id, b.id)
        self.assertGreater(a.timestamp, 0)


if __name__ == '__main__':
    unittest.main()
