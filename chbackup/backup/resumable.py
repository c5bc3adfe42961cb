"""
Resumable transfer ledger.

The ledger is an append-only JSON lines file next to the local backup, e.g.
``<data_path>/backup/<backup>/upload.state``. The first line records the
parameters of the run that created it; a run with different parameters starts
from an empty ledger. Every other line is one entry::

    {"key": "<remote key>", "status": "done", "size": 1234}

An archive is recorded as ``pending`` when its transfer starts; only ``done``
entries are skipped by a resumed run. The ledger is removed once the backup
is published.

Entries are buffered and flushed at most every ``flush_interval`` seconds and
on close, so a crash can lose the last interval of entries. Those units are
simply transferred again.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_DONE = 'done'


class ResumableState:
    """
    Thread-safe ledger of transferred units.

    Args:
        state_path: Ledger file path
        params: Parameters identifying the run (backup name, pattern, ...)
        flush_interval: Maximum seconds between flushes
    """

    def __init__(self, state_path: str, params: Optional[Dict[str, Any]] = None, flush_interval: float = 5.0):
        self.state_path = state_path
        self.params = params or {}
        self.flush_interval = flush_interval
        self._entries = {}
        self._buffer = []
        self._lock = threading.Lock()
        self._last_flush = time.monotonic()
        self._file = None
        self._load()

    def _load(self):
        os.makedirs(os.path.dirname(self.state_path) or '.', exist_ok=True)

        if os.path.exists(self.state_path):
            with open(self.state_path, 'r') as f:
                content = f.read()
            lines = content.splitlines()

            header = self._parse(lines[0]) if lines else None
            if header is not None and header.get('params') == self.params:
                for line in lines[1:]:
                    entry = self._parse(line)
                    if entry is not None and 'key' in entry:
                        self._entries[entry['key']] = entry
                logger.info(f"Resuming from {self.state_path}: {self.done_count} units already done")
                self._file = open(self.state_path, 'a')
                if not content.endswith('\n'):
                    # terminate a torn last line
                    self._file.write('\n')
                return

            logger.warning(f"Parameters changed since {self.state_path} was written, starting from scratch")

        self._file = open(self.state_path, 'w')
        self._file.write(json.dumps({'params': self.params}) + '\n')
        self._sync()

    def _parse(self, line: str) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(line)
        except ValueError:
            # torn write from a crash
            logger.warning(f"Ignoring corrupted line in {self.state_path}: {line[:80]!r}")
            return None

    def _sync(self):
        self._file.flush()
        os.fsync(self._file.fileno())
        self._last_flush = time.monotonic()

    def _append(self, key: str, status: str, size: int):
        entry = {'key': key, 'status': status, 'size': size}
        with self._lock:
            if self._file is None:
                raise ValueError(f"Resumable state {self.state_path} is closed")
            self._entries[key] = entry
            self._buffer.append(json.dumps(entry))
            if time.monotonic() - self._last_flush >= self.flush_interval:
                self._flush_locked()

    def _flush_locked(self):
        if self._buffer:
            self._file.write('\n'.join(self._buffer) + '\n')
            self._buffer = []
        self._sync()

    def mark_pending(self, key: str, size: int = 0):
        self._append(key, STATUS_PENDING, size)

    def mark_done(self, key: str, size: int = 0):
        """Record a unit whose bytes the destination has confirmed."""
        self._append(key, STATUS_DONE, size)

    def is_done(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry['status'] == STATUS_DONE

    def get_size(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry['size'] if entry else 0

    @property
    def done_count(self) -> int:
        return sum(1 for e in list(self._entries.values()) if e['status'] == STATUS_DONE)

    def flush(self):
        with self._lock:
            if self._file is not None:
                self._flush_locked()

    def close(self):
        with self._lock:
            if self._file is None:
                return
            self._flush_locked()
            self._file.close()
            self._file = None

    def remove(self):
        """Close the ledger and delete its file."""
        self.close()
        if os.path.exists(self.state_path):
            os.remove(self.state_path)
            logger.info(f"Removed {self.state_path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
