"""codevoice configuration loader."""

import os
import configparser
import re

_BASE_DIR = os.path.dirname(os.path.abspath(__file__))
_CONFIG_FILE = os.path.join(_BASE_DIR, "settings.conf")

SAMPLE_RATE = 16000  # canonical pipeline rate (Whisper requirement)

# Technical vocabulary that Whisper tends to mangle without a prompt.
DEFAULT_VOCABULARY = (
    "async, await, impl, struct, enum, pub, static, btreemap, hashmap, kubernetes, "
    "k8s, docker, container, pod, lifecycle, workflow, ci/cd, yaml, json, rustlang, "
    "python, javascript, typescript, bash, git, repo, branch, commit, push, pull, "
    "merge, rebase, upstream, downstream, middleware, database, sql, postgres, redis, "
    "api, endpoint, graphql, rest, grpc, protobuf, systemd, journalctl, wayland, nix, cargo"
)

# Spoken form -> symbol. Longer phrases are applied first.
DEFAULT_SPOKEN_PUNCTUATION = {
    'open parenthesis': '(', 'close parenthesis': ')',
    'open paren': '(', 'close paren': ')',
    'open bracket': '[', 'close bracket': ']',
    'open brace': '{', 'close brace': '}',
    'open quote': '"', 'close quote': '"',
    'question mark': '?', 'exclamation point': '!',
    'new paragraph': '\\n\\n', 'new line': '\\n', 'newline': '\\n',
    'dot dot dot': '...',
    'semicolon': ';', 'colon': ':', 'comma': ',', 'period': '.',
    'underscore': '_', 'equals': '=', 'ampersand': '&',
    'forward slash': '/', 'backslash': '\\\\',
}

DEFAULT_WORD_REPLACEMENTS = {
    'pseudo': 'sudo',
    'no hup': 'nohup',
    'get hub': 'GitHub',
    'jason': 'JSON',
    'see sharp': 'C#',
    'engine x': 'nginx',
}

# Phrases Whisper emits on silence, music, or fan noise. The ones that are also
# ordinary speech are listed in hallucination.AMBIGUOUS_PHRASES.
DEFAULT_HALLUCINATIONS = (
    "thank you", "thanks for watching", "thank you for watching",
    "please subscribe", "like and subscribe", "don't forget to subscribe",
    "see you next time", "bye bye", "subtitles by the amara.org community",
    "[music]", "(music)", "[silence]", "(silence)", "[blank_audio]", "you",
)


def load_config(path=None):
    """Load configuration from settings.conf, with sensible defaults. Returns a dict."""
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # Preserve case (default lowercases keys)

    # Defaults
    defaults = {
        'audio': {
            'device': '',
            'frame_ms': '30',
            'buffer_seconds': '2.0',
            'frame_queue_size': '200',
        },
        'vad': {
            'classifier': 'webrtc',
            'aggressiveness': '2',
            'energy_threshold': '300',
            'onset_ms': '90',
            'hangover_ms': '400',
            'preroll_ms': '300',
            'max_span_seconds': '30',
            'span_queue_size': '8',
        },
        'noise': {
            'enabled': 'true',
            'timeout': '0.5',
            'stationary': 'true',
            'std_threshold': '1.5',
            'prop_decrease': '0.85',
        },
        'acoustic': {
            'backend': 'whisper',
            'model': 'distil-large-v3',
            'device': 'auto',
            'compute_type': 'int8',
            'language': 'en',
            'beam_size': '1',
            'timeout': '10.0',
            'min_speech_seconds': '0.3',
            'word_confidence': 'true',
            'no_speech_threshold': '0.6',
            'ambiguous_no_speech_threshold': '0.3',
            'log_prob_threshold': '-1.0',
            'compression_ratio_threshold': '2.4',
        },
        'speculative': {
            'enabled': 'false',
            'model': 'large-v3',
            'device': 'auto',
            'compute_type': 'float16',
        },
        'bias': {
            'token_budget': '50',
            'max_keywords': '32',
            'vocabulary': DEFAULT_VOCABULARY,
        },
        'correction': {
            'backend': 'rules',
            'model': 'qwen2.5-coder:1.5b',
            'host': 'http://127.0.0.1:11434',
            'timeout': '3.0',
            'lines_before': '20',
            'lines_after': '5',
            'max_prompt_chars': '4000',
        },
        'context': {
            'provider': 'window',
            'language': '',
            'keywords': '',
        },
        'output': {
            'sink': 'editor',
            'auto_type': 'true',
            'typing_mode': 'console',
            'append_space': 'true',
            'stream_partials': 'false',
            'revisions_to_clipboard': 'false',
        },
        'behavior': {
            'debug_mode': 'false',
            'log_transcripts': 'false',
            'tray_enabled': 'false',
        },
        'history': {
            'enabled': 'true',
            'path': '',
            'max_entries': '1000',
        },
    }

    for section, values in defaults.items():
        config[section] = values

    path = path or _CONFIG_FILE
    if os.path.exists(path):
        config.read(path)

    frame_ms = config.getint('audio', 'frame_ms')
    if frame_ms not in (10, 20, 30):
        raise ValueError(f"[audio] frame_ms must be 10, 20 or 30, got {frame_ms}")

    # Build result dict with typed values
    result = {
        # Paths
        'base_dir': _BASE_DIR,
        'config_path': path,
        'icon_dir': os.path.join(_BASE_DIR, "icons"),

        # Audio
        'sample_rate': SAMPLE_RATE,
        'frame_ms': frame_ms,
        'frame_size': SAMPLE_RATE * frame_ms // 1000,
        'audio_device': config.get('audio', 'device').strip(),
        'buffer_seconds': config.getfloat('audio', 'buffer_seconds'),
        'frame_queue_size': config.getint('audio', 'frame_queue_size'),

        # Voice activity gate
        'vad_classifier': config.get('vad', 'classifier').strip().lower(),
        'vad_aggressiveness': config.getint('vad', 'aggressiveness'),
        'energy_threshold': config.getfloat('vad', 'energy_threshold'),
        'onset_ms': config.getint('vad', 'onset_ms'),
        'hangover_ms': config.getint('vad', 'hangover_ms'),
        'preroll_ms': config.getint('vad', 'preroll_ms'),
        'max_span_seconds': config.getfloat('vad', 'max_span_seconds'),
        'span_queue_size': config.getint('vad', 'span_queue_size'),

        # Noise suppression
        'noise_enabled': config.getboolean('noise', 'enabled'),
        'noise_timeout': config.getfloat('noise', 'timeout'),
        'noise_stationary': config.getboolean('noise', 'stationary'),
        'noise_std_threshold': config.getfloat('noise', 'std_threshold'),
        'noise_prop_decrease': config.getfloat('noise', 'prop_decrease'),

        # Acoustic model
        'acoustic_backend': config.get('acoustic', 'backend').strip().lower(),
        'acoustic_model': _resolve_model_path(config.get('acoustic', 'model').strip()),
        'acoustic_device': config.get('acoustic', 'device').strip(),
        'acoustic_compute_type': config.get('acoustic', 'compute_type').strip(),
        'language': config.get('acoustic', 'language').strip(),
        'beam_size': config.getint('acoustic', 'beam_size'),
        'acoustic_timeout': config.getfloat('acoustic', 'timeout'),
        'min_speech_seconds': config.getfloat('acoustic', 'min_speech_seconds'),
        'word_confidence': config.getboolean('acoustic', 'word_confidence'),
        'no_speech_threshold': config.getfloat('acoustic', 'no_speech_threshold'),
        'ambiguous_no_speech_threshold': config.getfloat('acoustic', 'ambiguous_no_speech_threshold'),
        'log_prob_threshold': config.getfloat('acoustic', 'log_prob_threshold'),
        'compression_ratio_threshold': config.getfloat('acoustic', 'compression_ratio_threshold'),

        # Speculative verification
        'speculative_enabled': config.getboolean('speculative', 'enabled'),
        'speculative_model': _resolve_model_path(config.get('speculative', 'model').strip()),
        'speculative_device': config.get('speculative', 'device').strip(),
        'speculative_compute_type': config.get('speculative', 'compute_type').strip(),

        # Bias vocabulary
        'bias_token_budget': config.getint('bias', 'token_budget'),
        'bias_max_keywords': config.getint('bias', 'max_keywords'),
        'bias_vocabulary': _split_list(config.get('bias', 'vocabulary')),

        # Semantic correction
        'correction_backend': config.get('correction', 'backend').strip().lower(),
        'correction_model': config.get('correction', 'model').strip(),
        'correction_host': config.get('correction', 'host').strip().rstrip('/'),
        'correction_timeout': config.getfloat('correction', 'timeout'),
        'lines_before': config.getint('correction', 'lines_before'),
        'lines_after': config.getint('correction', 'lines_after'),
        'max_prompt_chars': config.getint('correction', 'max_prompt_chars'),

        # Context indexer
        'context_provider': config.get('context', 'provider').strip().lower(),
        'context_language': config.get('context', 'language').strip().lower(),
        'context_keywords': _split_list(config.get('context', 'keywords')),

        # Output
        'sink': config.get('output', 'sink').strip().lower(),
        'auto_type': config.getboolean('output', 'auto_type'),
        'typing_mode': config.get('output', 'typing_mode').strip().lower(),
        'append_space': config.getboolean('output', 'append_space'),
        'stream_partials': config.getboolean('output', 'stream_partials'),
        'revisions_to_clipboard': config.getboolean('output', 'revisions_to_clipboard'),

        # Behavior
        'debug': config.getboolean('behavior', 'debug_mode'),
        'log_transcripts': config.getboolean('behavior', 'log_transcripts'),
        'tray_enabled': config.getboolean('behavior', 'tray_enabled'),

        # History
        'history_enabled': config.getboolean('history', 'enabled'),
        'history_path': config.get('history', 'path').strip() or _default_history_path(),
        'history_max_entries': config.getint('history', 'max_entries'),
    }

    # Build punctuation rules from config
    result['spoken_punctuation'] = _build_punctuation_rules(config)

    # Build word replacements from config
    result['word_replacements'] = _build_word_replacements(config)

    result['hallucination_phrases'] = _build_hallucinations(config)

    return result


def _split_list(value):
    return [item.strip() for item in value.split(',') if item.strip()]


def _resolve_model_path(name):
    """Relative paths under models/ win over hub names (e.g. 'distil-large-v3')."""
    local = os.path.join(_BASE_DIR, "models", name)
    if name and os.path.isdir(local):
        return local
    return name


def _default_history_path():
    data_home = os.environ.get('XDG_DATA_HOME') or os.path.join(os.path.expanduser('~'), '.local', 'share')
    return os.path.join(data_home, 'codevoice', 'history.jsonl')


def _build_punctuation_rules(config):
    """Build regex patterns from built-in and config spoken punctuation tables."""
    table = dict(DEFAULT_SPOKEN_PUNCTUATION)
    if 'spoken_punctuation' in config:
        table.update(config['spoken_punctuation'].items())

    # Sort by phrase length descending (longer phrases first)
    items = sorted(table.items(), key=lambda x: len(x[0]), reverse=True)

    rules = []
    for phrase, replacement in items:
        escaped = re.escape(phrase)
        pattern = r',?\s*\b' + escaped + r'\b[,.]?\s*'
        # Handle special replacements
        if replacement == '\\n\\n':
            replacement = '\n\n'
        elif replacement == '\\n':
            replacement = '\n'
        elif replacement == '\\\\':
            replacement = '\\\\'
        # Add spacing based on punctuation type
        if replacement in ('.', '!', '?', ',', ';', ':'):
            replacement = replacement + ' '
        elif replacement in ('(', '[', '{'):
            replacement = ' ' + replacement
        elif replacement in (')', ']', '}'):
            replacement = replacement + ' '
        elif replacement in ('=', '&'):
            replacement = ' ' + replacement + ' '
        elif replacement == '...':
            replacement = '... '
        rules.append((pattern, replacement))

    return rules


def _build_word_replacements(config):
    """Build word replacement dict from built-in defaults and config."""
    replacements = dict(DEFAULT_WORD_REPLACEMENTS)
    if 'word_replacements' in config:
        for wrong, correct in config['word_replacements'].items():
            replacements[wrong] = correct
    return replacements


def _build_hallucinations(config):
    """Phrases suppressed when they make up a whole decoded segment."""
    phrases = list(DEFAULT_HALLUCINATIONS)
    if 'hallucinations' in config:
        for phrase, enabled in config['hallucinations'].items():
            phrase = phrase.strip().lower()
            if enabled.strip().lower() in ('false', 'no', 'off', '0'):
                if phrase in phrases:
                    phrases.remove(phrase)
            elif phrase not in phrases:
                phrases.append(phrase)
    return phrases
