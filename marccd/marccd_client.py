"""Minimal marccd remote-mode client

Provides a small, testable socket client implementing the line framing used by
the marccd server in remote mode.

Requests:  <command>[,<arg>...]\n   e.g. "readout,0,/data/img_001.tif"
Responses: one line, only for the query commands get_state and get_size.

The server handles one request at a time and never sends unsolicited data, so
any bytes waiting before a new request are left over from an earlier exchange
and are discarded. This client is synchronous and does not retry; callers
decide what a failed step means.
"""

import logging
import socket
import threading
import time
from typing import Optional

from marccd import params
from marccd.exceptions import CommunicationError, ProtocolTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1.0
MAX_MESSAGE_SIZE = 256
TERMINATOR = b"\n"


class MarCCDClient:
    def __init__(self, host: str, port: int = 2222, timeout: float = DEFAULT_TIMEOUT,
                 registry: Optional[params.ParameterRegistry] = None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.registry = registry
        self.sock: Optional[socket.socket] = None
        self._buffer = bytearray()
        # serializes whole request/response exchanges between threads
        self._io_lock = threading.RLock()

    @property
    def connected(self) -> bool:
        return self.sock is not None

    def connect(self) -> None:
        if self.sock:
            return
        try:
            s = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            raise CommunicationError(f"Cannot connect to {self.host}:{self.port}: {e}") from e
        s.settimeout(self.timeout)
        self.sock = s
        self._buffer.clear()
        logger.info("Connected to marccd server at %s:%s", self.host, self.port)

    def disconnect(self) -> None:
        if self.sock:
            try:
                self.sock.close()
            finally:
                self.sock = None
                self._buffer.clear()

    def flush(self) -> int:
        """Discard any unread input. Returns the number of bytes dropped."""
        with self._io_lock:
            dropped = len(self._buffer)
            self._buffer.clear()
            if not self.sock:
                return dropped
            self.sock.setblocking(False)
            try:
                while True:
                    try:
                        chunk = self.sock.recv(4096)
                    except (BlockingIOError, InterruptedError):
                        break
                    except OSError as e:
                        raise CommunicationError(f"Flush failed: {e}") from e
                    if not chunk:
                        break
                    dropped += len(chunk)
            finally:
                if self.sock:
                    self.sock.settimeout(self.timeout)
            if dropped:
                logger.warning("Discarded %d stale bytes from marccd server", dropped)
            return dropped

    def send(self, command: str) -> None:
        """Send one command line."""
        with self._io_lock:
            if not self.sock:
                raise CommunicationError("Not connected")
            if self.registry is not None:
                self.registry.set(params.STRING_TO_SERVER, command)
            logger.debug("TX: %s", command)
            try:
                self.sock.sendall(command.encode("ascii") + TERMINATOR)
            except (OSError, UnicodeEncodeError) as e:
                logger.error("Error sending %r: %s", command, e)
                raise CommunicationError(f"Send failed for {command!r}: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> str:
        """Receive one response line, without its terminator."""
        if timeout is None:
            timeout = self.timeout
        with self._io_lock:
            if not self.sock:
                raise CommunicationError("Not connected")
            deadline = time.monotonic() + timeout
            while TERMINATOR not in self._buffer:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProtocolTimeout(f"No response within {timeout}s")
                self.sock.settimeout(remaining)
                try:
                    chunk = self.sock.recv(4096)
                except socket.timeout:
                    continue
                except OSError as e:
                    raise CommunicationError(f"Receive failed: {e}") from e
                finally:
                    if self.sock:
                        self.sock.settimeout(self.timeout)
                if not chunk:
                    raise CommunicationError("Connection closed by peer")
                self._buffer.extend(chunk)
                if len(self._buffer) > MAX_MESSAGE_SIZE and TERMINATOR not in self._buffer:
                    self._buffer.clear()
                    raise CommunicationError("Response exceeds maximum message size")

            line, _, rest = bytes(self._buffer).partition(TERMINATOR)
            self._buffer = bytearray(rest)
            text = line.decode("ascii", errors="replace").rstrip("\r")
            logger.debug("RX: %s", text)
            if self.registry is not None:
                self.registry.set(params.STRING_FROM_SERVER, text)
            return text

    def send_and_receive(self, command: str, timeout: Optional[float] = None) -> str:
        with self._io_lock:
            self.flush()
            self.send(command)
            return self.receive(timeout)


if __name__ == '__main__':
    # small demo when run directly: query the server state and image size
    import sys
    if len(sys.argv) < 2:
        print("Usage: marccd_client.py <host> [port]")
        sys.exit(2)
    host = sys.argv[1]
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 2222
    c = MarCCDClient(host, port)
    try:
        c.connect()
        print("Connected")
        print("get_state ->", c.send_and_receive("get_state"))
        print("get_size  ->", c.send_and_receive("get_size"))
    finally:
        c.disconnect()
