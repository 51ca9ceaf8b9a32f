"""
test_virtual_programmer.py — TCP virtual programmer tests.
"""

import sys
import socket
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "tools"))
import virtual_programmer as vp
import galburner as gb


def _recv_until_prompt(sock: socket.socket) -> bytes:
    buf = bytearray()
    while gb.PROMPT not in buf:
        chunk = sock.recv(1024)
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


@pytest.fixture
def served():
    """Client socket connected to handle_client() running in a thread."""
    programmer = gb.LoopbackTransport(big_ram=True)
    client, server = socket.socketpair()
    client.settimeout(5.0)
    worker = threading.Thread(target=vp.handle_client, args=(programmer, server), daemon=True)
    worker.start()
    yield client, programmer
    client.close()
    worker.join(timeout=5.0)


class TestVirtualProgrammer:

    def test_banner(self, served):
        client, _ = served
        client.sendall(b"*\r")
        data = _recv_until_prompt(client)
        assert data.startswith(b"AFTerburner v.")
        assert b" RAM-BIG" in data

    def test_command_roundtrip(self, served):
        client, programmer = served
        client.sendall(b"g1\r")
        _recv_until_prompt(client)
        client.sendall(b"p\r")
        assert b"PES info" in _recv_until_prompt(client)
        assert programmer.device_code == 1

    def test_pump_empty(self):
        t = gb.LoopbackTransport()
        t.open()
        assert vp.pump(t) == b""

    def test_pump_drains(self):
        t = gb.LoopbackTransport()
        t.open()
        t.write(b"*\r")
        assert vp.pump(t).endswith(gb.PROMPT)
        assert t.bytes_available == 0
