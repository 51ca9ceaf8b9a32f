"""
conftest.py — Shared fixtures for galburner tests.
"""
import sys
import time
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import galburner as gb


BANNER = b"AFTerburner v.0.6.0 varVpp \r\n>\r\n"


class ScriptedTransport(gb.BaseTransport):
    """
    Replays canned programmer output.

    Every write holding a CR releases the next reply; a reply is a list of
    chunks handed out one read at a time, so split responses can be staged.
    """

    def __init__(self, replies, max_write=None):
        self.replies = [list(r) if isinstance(r, (list, tuple)) else [r] for r in replies]
        self.chunks = []
        self.written = bytearray()
        self.max_write = max_write
        self.opened = False
        self.close_count = 0

    def open(self):
        self.opened = True

    def close(self):
        self.opened = False
        self.close_count += 1

    def write(self, data):
        n = len(data) if self.max_write is None else min(len(data), self.max_write)
        self.written.extend(data[:n])
        if b"\r" in data[:n] and self.replies:
            self.chunks.extend(self.replies.pop(0))
        return n

    def read(self, count, timeout_ms=gb.POLL_INTERVAL_MS):
        if not self.chunks:
            time.sleep(timeout_ms / 1000.0)
            return b""
        chunk = self.chunks[0]
        out, rest = chunk[:count], chunk[count:]
        if rest:
            self.chunks[0] = rest
        else:
            self.chunks.pop(0)
        return out

    def flush_input(self):
        self.chunks.clear()

    @property
    def is_open(self):
        return self.opened

    @property
    def bytes_available(self):
        return len(self.chunks[0]) if self.chunks else 0


@pytest.fixture
def scripted():
    """Factory for ScriptedTransport instances."""
    return ScriptedTransport
