import socket
import threading
import time

import pytest

from marccd import params
from marccd.exceptions import CommunicationError, ProtocolTimeout
from marccd.marccd_client import MarCCDClient


class MockMarCCDServer(threading.Thread):
    def __init__(self, host='127.0.0.1', response_map=None, greeting=None):
        super().__init__(daemon=True)
        self.host = host
        self.response_map = response_map or {}
        self.greeting = greeting
        self.received = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((self.host, 0))
        self._sock.listen(1)
        self.port = self._sock.getsockname()[1]
        self.running = True
        self.conn = None

    def run(self):
        try:
            conn, addr = self._sock.accept()
        except OSError:
            return
        self.conn = conn
        with conn:
            conn.settimeout(0.2)
            if self.greeting:
                # unsolicited bytes, as left behind by an earlier exchange
                conn.sendall(self.greeting)
            data = b""
            while self.running:
                try:
                    chunk = conn.recv(4096)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not chunk:
                    break
                data += chunk
                while b"\n" in data:
                    line, _, data = data.partition(b"\n")
                    cmd = line.decode('ascii').strip()
                    self.received.append(cmd)
                    resp = self.response_map.get(cmd)
                    if resp is not None:
                        conn.sendall(resp.encode('ascii'))

    def stop(self):
        self.running = False
        try:
            self._sock.close()
        except OSError:
            pass


@pytest.fixture
def server_factory():
    servers = []

    def factory(**kwargs):
        server = MockMarCCDServer(**kwargs)
        server.start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


def wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_send_and_receive(server_factory):
    server = server_factory(response_map={'get_state': '0x22\n', 'get_size': '2048,2048\n'})
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        assert c.send_and_receive('get_state') == '0x22'
        assert c.send_and_receive('get_size') == '2048,2048'
    finally:
        c.disconnect()


def test_send_has_no_reply(server_factory):
    server = server_factory()
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        c.send('readout,0,/data/test_001.tif')
        assert wait_for(lambda: server.received == ['readout,0,/data/test_001.tif'])
    finally:
        c.disconnect()


def test_carriage_return_stripped(server_factory):
    server = server_factory(response_map={'get_state': '0\r\n'})
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        assert c.send_and_receive('get_state') == '0'
    finally:
        c.disconnect()


def test_receive_timeout(server_factory):
    server = server_factory()
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        start = time.time()
        with pytest.raises(ProtocolTimeout):
            c.send_and_receive('get_state', timeout=0.2)
        assert time.time() - start < 1.5
    finally:
        c.disconnect()


def test_timeout_is_a_communication_error():
    assert issubclass(ProtocolTimeout, CommunicationError)


def test_stale_input_flushed_before_request(server_factory):
    server = server_factory(response_map={'get_state': '0x0\n'}, greeting=b'0x999\n')
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        # give the stale line time to arrive before the request
        time.sleep(0.2)
        assert c.send_and_receive('get_state') == '0x0'
    finally:
        c.disconnect()


def test_flush_reports_dropped_bytes(server_factory):
    server = server_factory(greeting=b'junk\n')
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        time.sleep(0.2)
        assert c.flush() == len(b'junk\n')
        assert c.flush() == 0
    finally:
        c.disconnect()


def test_not_connected():
    c = MarCCDClient('127.0.0.1', port=1, timeout=0.5)
    with pytest.raises(CommunicationError):
        c.send('start')
    with pytest.raises(CommunicationError):
        c.receive(0.1)


def test_connect_refused():
    # grab a free port, then close it so nothing is listening
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('127.0.0.1', 0))
    port = s.getsockname()[1]
    s.close()
    c = MarCCDClient('127.0.0.1', port=port, timeout=0.5)
    with pytest.raises(CommunicationError):
        c.connect()
    assert not c.connected


def test_peer_closed(server_factory):
    server = server_factory()
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        assert wait_for(lambda: server.conn is not None)
        server.running = False
        with pytest.raises(CommunicationError):
            c.receive(1.0)
    finally:
        c.disconnect()


def test_lines_mirrored_into_registry(server_factory):
    server = server_factory(response_map={'get_size': '1024,1024\n'})
    registry = params.ParameterRegistry()
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0, registry=registry)
    c.connect()
    try:
        c.send_and_receive('get_size')
        assert registry.get(params.STRING_TO_SERVER) == 'get_size'
        assert registry.get(params.STRING_FROM_SERVER) == '1024,1024'
    finally:
        c.disconnect()


def test_two_replies_in_one_packet(server_factory):
    server = server_factory(response_map={'get_size': '10,20\n0x0\n'})
    c = MarCCDClient('127.0.0.1', port=server.port, timeout=2.0)
    c.connect()
    try:
        c.send('get_size')
        assert c.receive(1.0) == '10,20'
        assert c.receive(1.0) == '0x0'
    finally:
        c.disconnect()
