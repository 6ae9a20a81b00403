"""codevoice history — delivered results kept as one JSON object per line.

Appends are cheap; anything that removes entries rewrites the file through a
temp file and a rename so a crash never leaves a half-written history.
"""

import fcntl
import json
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field

from logging_utils import log_debug, log_info, log_warn


@dataclass
class HistoryEntry:
    text: str
    raw_text: str = ""
    duration_ms: int = 0
    model: str = ""
    correction_model: str = ""
    language: str = ""
    degraded: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_result(cls, result):
        hypothesis = result.hypothesis
        return cls(
            text=result.text,
            raw_text=hypothesis.text,
            duration_ms=int(round(hypothesis.audio_seconds * 1000)),
            model=hypothesis.model,
            correction_model=result.correction_model,
            language=result.language,
            degraded=result.degraded,
            timestamp=int(result.created_at * 1000),
        )

    @classmethod
    def from_dict(cls, data):
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class HistoryPage:
    entries: list
    total: int
    has_more: bool


class TranscriptionHistory:
    def __init__(self, path, max_entries=0):
        self.path = path
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._lock_path = os.path.join(os.path.dirname(path) or '.', '.history.jsonl.lock')

    @contextmanager
    def _locked(self, shared=False):
        """Thread lock plus an advisory file lock shared with other processes."""
        with self._lock:
            os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
            with open(self._lock_path, 'w') as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def append(self, result):
        """Record a delivered PipelineResult. Returns the stored entry."""
        entry = HistoryEntry.from_result(result)
        self.append_entry(entry)
        return entry

    def append_entry(self, entry):
        with self._locked():
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(asdict(entry), ensure_ascii=False) + '\n')
            log_debug(f"[HISTORY] Appended {entry.id}")
            if self.max_entries:
                self._enforce_max_entries()

    def load(self, limit=50, offset=0, search=None, model=None):
        """Newest-first page of entries, optionally filtered by text search and model."""
        with self._locked(shared=True):
            entries = self._read_all()
        if search:
            query = search.lower()
            entries = [e for e in entries if query in e.text.lower()]
        if model:
            entries = [e for e in entries if e.model == model]
        total = len(entries)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        page = entries[offset:offset + limit]
        return HistoryPage(entries=page, total=total, has_more=offset + len(page) < total)

    def models(self):
        with self._locked(shared=True):
            return sorted({e.model for e in self._read_all() if e.model})

    def delete(self, entry_id):
        with self._locked():
            entries = self._read_all()
            kept = [e for e in entries if e.id != entry_id]
            self._write_atomic(kept)
        removed = len(entries) - len(kept)
        if removed:
            log_info(f"[HISTORY] Deleted entry {entry_id}")
        return removed > 0

    def clear(self):
        with self._locked():
            self._write_atomic([])
        log_info("[HISTORY] Cleared all entries")

    def _enforce_max_entries(self):
        entries = self._read_all()
        if len(entries) <= self.max_entries:
            return
        entries.sort(key=lambda e: e.timestamp)
        removed = len(entries) - self.max_entries
        self._write_atomic(entries[removed:])
        log_debug(f"[HISTORY] Trimmed {removed} old entries")

    def _read_all(self):
        if not os.path.exists(self.path):
            return []
        entries = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    if not isinstance(data, dict):
                        raise ValueError(f"expected an object, got {type(data).__name__}")
                    entries.append(HistoryEntry.from_dict(data))
                except (ValueError, TypeError) as e:
                    log_warn(f"[HISTORY] Skipping corrupted line {lineno}: {e}")
        return entries

    def _write_atomic(self, entries):
        tmp_path = os.path.join(os.path.dirname(self.path) or '.', '.history.jsonl.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                for entry in entries:
                    f.write(json.dumps(asdict(entry), ensure_ascii=False) + '\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
