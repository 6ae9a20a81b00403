"""codevoice semantic corrector — raw hypothesis + editing context -> final text.

Every failure path ends in the raw hypothesis text: a correction that errors,
times out, or produces something implausible is dropped, never the utterance.
"""

import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import requests

import code_templates
from errors import CorrectionError, ModelLoadError
from logging_utils import describe_text, log_debug, log_info, log_warn
from models import AppliedCorrection, PipelineResult
from text_processing import process_text

# Output longer than this many times the input (and MIN_EXPANSION_CHARS) is rejected.
MAX_EXPANSION = 8
MIN_EXPANSION_CHARS = 200

_FENCE_RE = re.compile(r'^```[\w+-]*\n(.*?)\n?```$', re.S)
_THINK_RE = re.compile(r'<think>.*?</think>', re.S)

PROMPT_HEADER = (
    "You turn dictated speech into the exact text to insert at the cursor of a code editor.\n"
    "Fix misheard technical terms, apply the language's naming conventions and the file's "
    "indentation, and turn spoken code descriptions into code. Output only the text to "
    "insert: no explanations, no markdown fences."
)


def build_prompt(text, context, lines_before=20, lines_after=5, max_chars=4000):
    """Bounded correction prompt: dictation, cursor window, language.

    Context lines furthest from the cursor are dropped first when the prompt
    would exceed max_chars. The dictation itself is never cut.
    """
    before, after = context.window(lines_before, lines_after)
    before = list(before)
    after = list(after)

    def assemble():
        parts = [PROMPT_HEADER]
        if context.language:
            parts.append(f"Language: {context.language}")
        if context.file_path:
            parts.append(f"File: {context.file_path}")
        if before:
            parts.append("Before cursor:\n" + "\n".join(before))
        parts.append(f"Cursor line: {context.current_line}")
        if after:
            parts.append("After cursor:\n" + "\n".join(after))
        parts.append(f"Dictation: {text}")
        parts.append("Insert:")
        return "\n\n".join(parts)

    prompt = assemble()
    while len(prompt) > max_chars and (before or after):
        if len(before) >= len(after):
            before.pop(0)
        else:
            after.pop()
        prompt = assemble()
    return prompt


def clean_response(text):
    """Strip reasoning blocks and a wrapping markdown fence from model output."""
    text = _THINK_RE.sub('', text).strip()
    match = _FENCE_RE.match(text)
    if match:
        text = match.group(1)
    return text.strip('\n').rstrip()


class RuleCorrectionModel:
    """Deterministic correction: code templates, else the punctuation-processed text."""

    name = 'rules'

    def __init__(self, config):
        self.config = config

    def load(self):
        pass

    def unload(self):
        pass

    def correct(self, text, context, prompt):
        code = code_templates.render(text, context)
        if code is None:
            return text, []
        return code, [AppliedCorrection('template', text, code)]


class OllamaCorrectionModel:
    """Local LLM served by Ollama's /api/generate."""

    name = 'ollama'

    def __init__(self, config):
        self.host = config.get('correction_host', 'http://127.0.0.1:11434')
        self.model = config.get('correction_model', '')
        self.timeout = config.get('correction_timeout', 3.0)
        self.session = None

    def load(self):
        """Check the server is up and has the model. ModelLoadError otherwise."""
        session = requests.Session()
        try:
            resp = session.get(f"{self.host}/api/tags", timeout=self.timeout)
            resp.raise_for_status()
            names = {m.get('name', '') for m in resp.json().get('models', [])}
        except (requests.RequestException, ValueError) as e:
            session.close()
            raise ModelLoadError(self.model, f"Ollama at {self.host} unreachable: {e}") from e
        if names and self.model not in names and f"{self.model}:latest" not in names:
            session.close()
            raise ModelLoadError(self.model, f"not pulled on {self.host}")
        self.session = session
        log_info(f"[MODELS] Correction model ready ({self.model} via Ollama)")

    def unload(self):
        if self.session is not None:
            self.session.close()
            self.session = None

    def correct(self, text, context, prompt):
        session = self.session or requests
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": 0.0,
            }
        }
        try:
            resp = session.post(f"{self.host}/api/generate", json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise CorrectionError(f"Ollama request failed: {e}") from e
        output = clean_response(data.get("response", ""))
        if output == text:
            return output, []
        return output, [AppliedCorrection('model', text, output)]


CORRECTION_BACKENDS = {
    'rules': RuleCorrectionModel,
    'ollama': OllamaCorrectionModel,
}


def build_correction_model(config):
    name = config.get('correction_backend', 'rules')
    if name not in CORRECTION_BACKENDS:
        raise ValueError(f"Unknown correction backend '{name}'. Available: {sorted(CORRECTION_BACKENDS)}")
    return CORRECTION_BACKENDS[name](config)


def validate(source, output):
    """Raise CorrectionError if output is degenerate compared to source."""
    if not output.strip():
        raise CorrectionError("empty output")
    if code_templates.delimiters_balanced(source) and not code_templates.delimiters_balanced(output):
        raise CorrectionError("unbalanced delimiters")
    if len(output) > max(MIN_EXPANSION_CHARS, MAX_EXPANSION * len(source)):
        raise CorrectionError(f"output grew from {len(source)} to {len(output)} chars")


class SemanticCorrector:
    """Runs one correction model, one call at a time, under a deadline."""

    def __init__(self, config, model=None):
        self.config = config
        self.model = model or build_correction_model(config)
        self.timeout = config.get('correction_timeout', 3.0)
        self.lines_before = config.get('lines_before', 20)
        self.lines_after = config.get('lines_after', 5)
        self.max_prompt_chars = config.get('max_prompt_chars', 4000)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="correct")
        self.degraded = 0

    @property
    def name(self):
        return getattr(self.model, 'name', type(self.model).__name__)

    @property
    def busy(self):
        return self._lock.locked()

    def correct(self, hypothesis, context):
        """TranscriptionHypothesis + CorrectionContext -> PipelineResult. Never raises."""
        if hypothesis.is_empty:
            return PipelineResult(
                utterance_id=hypothesis.utterance_id,
                text="",
                hypothesis=hypothesis,
                language=context.language,
            )

        corrections = []
        try:
            text = process_text(hypothesis.text, self.config)
            if text != hypothesis.text:
                corrections.append(AppliedCorrection('spoken_punctuation', hypothesis.text, text))
            prompt = build_prompt(text, context, self.lines_before, self.lines_after,
                                  self.max_prompt_chars)
            with self._lock:
                future = self._executor.submit(self.model.correct, text, context, prompt)
                try:
                    output, applied = future.result(timeout=self.timeout)
                except FutureTimeout:
                    future.cancel()
                    raise CorrectionError(f"timed out after {self.timeout:.1f}s")
            validate(text, output)
        except CorrectionError as e:
            return self._degrade(hypothesis, context, str(e))
        except Exception as e:
            return self._degrade(hypothesis, context, f"{type(e).__name__}: {e}")

        corrections.extend(applied)
        log_debug(f"[CORRECT] Utterance {hypothesis.utterance_id}: {len(corrections)} correction(s), "
                  f"{describe_text(output)}")
        return PipelineResult(
            utterance_id=hypothesis.utterance_id,
            text=output,
            hypothesis=hypothesis,
            corrections=tuple(corrections),
            language=context.language,
            correction_model=self.name,
        )

    def _degrade(self, hypothesis, context, reason):
        self.degraded += 1
        log_warn(f"[CORRECT] Utterance {hypothesis.utterance_id} uncorrected ({reason})")
        return PipelineResult(
            utterance_id=hypothesis.utterance_id,
            text=hypothesis.text,
            hypothesis=hypothesis,
            degraded=True,
            degradation_reason=reason,
            language=context.language,
            correction_model=self.name,
        )

    def close(self):
        self._executor.shutdown(wait=False)
