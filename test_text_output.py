"""Unit tests for output sinks. xdotool and xclip are mocked."""

import io
import os
import subprocess
import unittest
from unittest import mock

import text_output
from config import load_config
from models import PartialHypothesis, PipelineResult, Revision, TranscriptionHypothesis
from text_output import ConsoleSink, EditorSink, build_sink, type_text


def _make_config(**overrides):
    config = load_config(os.devnull)
    config.update(overrides)
    return config


def _result(text):
    return PipelineResult(utterance_id=1, text=text, hypothesis=TranscriptionHypothesis(1, text))


@mock.patch('text_output.copy_to_clipboard', return_value=True)
@mock.patch('text_output.type_text', return_value=True)
@mock.patch('text_output.get_active_window_class', return_value='code')
class TestEditorSink(unittest.TestCase):

    def test_prose_gets_trailing_space(self, _window, mock_type, _clip):
        EditorSink(_make_config()).on_result(_result("hello world"))
        mock_type.assert_called_once_with("hello world ", 'console')

    def test_multiline_code_typed_verbatim(self, _window, mock_type, _clip):
        code = "struct UserConfig {\n    id: String,\n}"
        EditorSink(_make_config()).on_result(_result(code))
        mock_type.assert_called_once_with(code, 'console')

    def test_terminal_gets_clipboard(self, mock_window, mock_type, mock_clip):
        mock_window.return_value = 'kitty'
        EditorSink(_make_config()).on_result(_result("ls -la"))
        mock_type.assert_not_called()
        mock_clip.assert_called_once_with("ls -la ")

    def test_typing_failure_falls_back_to_clipboard(self, _window, mock_type, mock_clip):
        mock_type.return_value = False
        EditorSink(_make_config()).on_result(_result("let x = 5;"))
        mock_clip.assert_called_once_with("let x = 5; ")

    def test_clipboard_mode(self, mock_window, mock_type, mock_clip):
        EditorSink(_make_config(typing_mode='clipboard')).on_result(_result("x"))
        mock_window.assert_not_called()
        mock_clip.assert_called_once_with("x ")

    def test_auto_type_off_or_empty(self, _window, mock_type, mock_clip):
        EditorSink(_make_config(auto_type=False)).on_result(_result("x"))
        EditorSink(_make_config()).on_result(_result(""))
        mock_type.assert_not_called()
        mock_clip.assert_not_called()

    def test_revision_leaves_clipboard_alone_by_default(self, _window, mock_type, mock_clip):
        EditorSink(_make_config()).on_revision(Revision(1, "let x equal fine", "let x equal five", "large-v3"))
        mock_clip.assert_not_called()
        mock_type.assert_not_called()

    def test_revision_offered_on_clipboard_when_enabled(self, _window, mock_type, mock_clip):
        sink = EditorSink(_make_config(revisions_to_clipboard=True))
        sink.on_revision(Revision(1, "let x equal fine", "let x equal five", "large-v3"))
        mock_clip.assert_called_once_with("let x equal five")
        mock_type.assert_not_called()


class TestConsoleSink(unittest.TestCase):

    def test_results_and_revisions_printed(self):
        stream = io.StringIO()
        sink = ConsoleSink(_make_config(), stream=stream)
        sink.on_partial(PartialHypothesis(1, "hel", 0))
        sink.on_result(_result("hello"))
        sink.on_result(_result(""))
        sink.on_revision(Revision(1, "hello", "yellow", "large-v3"))
        self.assertEqual(stream.getvalue(), "hello\n[revised #1] yellow\n")

    def test_partials_when_enabled(self):
        stream = io.StringIO()
        ConsoleSink(_make_config(stream_partials=True), stream=stream).on_partial(
            PartialHypothesis(1, "hel", 0))
        self.assertEqual(stream.getvalue(), "... hel\n")

    def test_build_sink(self):
        self.assertIsInstance(build_sink(_make_config(sink='console')), ConsoleSink)
        self.assertIsInstance(build_sink(_make_config()), EditorSink)
        with self.assertRaises(ValueError):
            build_sink(_make_config(sink='websocket'))


class TestTypeText(unittest.TestCase):

    @mock.patch('text_output.subprocess.run')
    def test_gui_mode_sends_return_between_lines(self, mock_run):
        self.assertTrue(type_text("a\nb", 'gui'))
        commands = [c.args[0] for c in mock_run.call_args_list]
        self.assertEqual(commands, [
            ['xdotool', 'type', '--clearmodifiers', '--', 'a'],
            ['xdotool', 'key', 'Return'],
            ['xdotool', 'type', '--clearmodifiers', '--', 'b'],
        ])

    @mock.patch('text_output.subprocess.run', side_effect=FileNotFoundError("xdotool"))
    def test_missing_tool_returns_false(self, _run):
        self.assertFalse(type_text("x"))
        self.assertFalse(text_output.copy_to_clipboard("x"))

    @mock.patch('text_output.subprocess.run', side_effect=subprocess.TimeoutExpired('xdotool', 5.0))
    def test_timeout_returns_false(self, _run):
        self.assertFalse(type_text("x"))


if __name__ == '__main__':
    unittest.main()
