"""
Contract tests for UnixSocketTransport.

Covers:
- Connect failure surfaces as EngineConnectionError
- Reader thread delivers received bytes
- on_closed fires when the peer closes, not on local close
- Writes after close are refused
"""

import os
import socket
import threading

import pytest

from turntable.errors import EngineConnectionError
from turntable.ipc.transport import UnixSocketTransport
from turntable.tests.contracts._fake_engine import wait_until


@pytest.fixture
def server(socket_dir):
    path = os.path.join(socket_dir, "t.sock")
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(path)
    srv.listen(1)
    srv.settimeout(2.0)
    yield path, srv
    srv.close()


def test_connect_to_missing_socket_raises(socket_dir):
    transport = UnixSocketTransport(os.path.join(socket_dir, "missing.sock"))
    with pytest.raises(EngineConnectionError):
        transport.connect(timeout=0.2)
    assert not transport.connected


def test_bytes_flow_both_ways(server):
    path, srv = server
    transport = UnixSocketTransport(path, read_timeout=0.05)
    transport.connect(timeout=1.0)
    peer, _ = srv.accept()

    received = []
    transport.start(on_bytes=received.append, on_closed=lambda: None)
    peer.sendall(b'{"event":"idle"}\n')
    assert wait_until(lambda: b"".join(received) == b'{"event":"idle"}\n')

    transport.send(b'{"command":["get_property","volume"],"request_id":1}\n')
    peer.settimeout(1.0)
    assert peer.recv(1024).startswith(b'{"command"')

    transport.close()
    peer.close()


def test_peer_close_reports_once(server):
    path, srv = server
    transport = UnixSocketTransport(path, read_timeout=0.05)
    transport.connect(timeout=1.0)
    peer, _ = srv.accept()

    closed = threading.Event()
    calls = []

    def on_closed():
        calls.append(1)
        closed.set()

    transport.start(on_bytes=lambda data: None, on_closed=on_closed)
    peer.close()
    assert closed.wait(2.0)
    transport.close()
    assert calls == [1]


def test_local_close_does_not_report_and_refuses_writes(server):
    path, srv = server
    transport = UnixSocketTransport(path, read_timeout=0.05)
    transport.connect(timeout=1.0)
    peer, _ = srv.accept()

    calls = []
    transport.start(on_bytes=lambda data: None, on_closed=lambda: calls.append(1))
    transport.close()
    transport.close()
    assert calls == []
    with pytest.raises(EngineConnectionError):
        transport.send(b"{}\n")
    peer.close()


def test_handler_exception_does_not_kill_reader(server):
    path, srv = server
    transport = UnixSocketTransport(path, read_timeout=0.05)
    transport.connect(timeout=1.0)
    peer, _ = srv.accept()

    received = []

    def on_bytes(data):
        received.append(data)
        if len(received) == 1:
            raise ValueError("handler bug")

    transport.start(on_bytes=on_bytes, on_closed=lambda: None)
    peer.sendall(b"a")
    assert wait_until(lambda: len(received) == 1)
    peer.sendall(b"b")
    assert wait_until(lambda: len(received) == 2)
    transport.close()
    peer.close()
