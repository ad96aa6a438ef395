"""
Pytest fixtures for MAR CCD IOC testing.

Provides shared fixtures for:
- marccd simulator server management
- Fake marccd clients with scripted status words
- Driver instances and TIFF test data

Environment Variables:
- SIMULATOR_HOST: Hostname the in-process simulator binds to (default: localhost)
"""

import os
import sys
import threading
from pathlib import Path

import numpy as np
import pytest
import tifffile

# Add project paths to import from
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT / "sim"))

from MarCCDSimServer import MarCCDSimServer, MarCCDSimulator  # noqa: E402
from marccd import params  # noqa: E402
from marccd.exceptions import CommunicationError  # noqa: E402
from marccd.marccd_client import MarCCDClient  # noqa: E402
from marccd.marccd_driver import MarCCDDriver  # noqa: E402

SIMULATOR_HOST = os.environ.get("SIMULATOR_HOST", "localhost")

# Small detector so tests read and write files quickly
SIM_SIZE_X = 64
SIM_SIZE_Y = 48


# ============================================================================
# Simulator Fixtures
# ============================================================================

class SimulatorThread:
    """Manager for an in-process marccd simulator server."""

    def __init__(self, host=None, **sim_kwargs):
        self.host = host or SIMULATOR_HOST
        sim_kwargs.setdefault("size_x", SIM_SIZE_X)
        sim_kwargs.setdefault("size_y", SIM_SIZE_Y)
        sim_kwargs.setdefault("readout_time", 0.02)
        sim_kwargs.setdefault("correct_time", 0.01)
        sim_kwargs.setdefault("write_time", 0.02)
        sim_kwargs.setdefault("dezinger_time", 0.01)
        self.simulator = MarCCDSimulator(**sim_kwargs)
        self.server = None
        self.thread = None
        self.port = None

    def start(self):
        self.server = MarCCDSimServer((self.host, 0), self.simulator)
        self.port = self.server.server_address[1]
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        return True

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None

    @property
    def commands(self):
        """Commands received so far, without the get_state polls."""
        return [c for c in self.simulator.commands if c != "get_state"]


@pytest.fixture(scope="function")
def simulator():
    """
    Fixture that starts the marccd simulator for each test.

    Yields the SimulatorThread instance.
    Automatically stops simulator after test.
    """
    sim = SimulatorThread()
    sim.start()
    yield sim
    sim.stop()


@pytest.fixture
def sim_client(simulator):
    """Connected MarCCDClient talking to the simulator."""
    client = MarCCDClient(simulator.host, simulator.port, timeout=2.0)
    client.connect()
    yield client
    client.disconnect()


@pytest.fixture
def sim_driver(simulator, tmp_path):
    """Driver connected to the simulator, with files going to tmp_path."""
    registry = params.ParameterRegistry(params.default_parameters(SIM_SIZE_X, SIM_SIZE_Y))
    registry.update({
        params.FILE_PATH: str(tmp_path),
        params.FILE_NAME: "test",
        params.BIN_X: 1,
        params.BIN_Y: 1,
        params.TIFF_TIMEOUT: 5.0,
    })
    client = MarCCDClient(simulator.host, simulator.port, timeout=2.0, registry=registry)
    driver = MarCCDDriver(client, registry, max_size_x=SIM_SIZE_X, max_size_y=SIM_SIZE_Y,
                          timeout=2.0)
    driver.connect()
    yield driver
    driver.stop()


# ============================================================================
# Fake Client Fixtures
# ============================================================================

# Task status bits as they appear in the status word
ACQUIRE_EXECUTING = 0x2 << 4
ACQUIRE_QUEUED = 0x1 << 4
READ_EXECUTING = 0x2 << 8
CORRECT_EXECUTING = 0x2 << 12
WRITE_EXECUTING = 0x2 << 16
WRITE_QUEUED = 0x1 << 16
DEZINGER_EXECUTING = 0x2 << 20


class FakeClient:
    """
    Stand-in for MarCCDClient with a scripted server.

    Each get_state query answers the next word of ``states``; the last one
    repeats. Commands rewrite the script the way the marccd task pipeline
    would evolve (start -> acquire executing, readout -> read then write
    busy for a couple of polls, ...). Readouts with a file name and
    writefile commands write a TIFF file, like the real server.
    """

    def __init__(self, states=None, size=(SIM_SIZE_X, SIM_SIZE_Y), busy_polls=2):
        self.host = "fake"
        self.port = 0
        self.registry = None
        self.connected = True
        self.states = list(states or [0])
        self.size = size
        self.busy_polls = busy_polls
        self.sent = []
        self.fail_on = set()
        self.files_written = []
        self.frame = 0

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def script(self, *states):
        self.states = list(states)

    def _write_file(self, file_name):
        self.frame += 1
        write_tiff(file_name, make_image(self.size[0], self.size[1], offset=self.frame))
        self.files_written.append(file_name)

    def _simulate(self, command):
        name, *args = command.split(",")
        n = self.busy_polls
        if name == "start":
            self.script(ACQUIRE_QUEUED, ACQUIRE_EXECUTING | 1)
        elif name == "readout":
            states = [READ_EXECUTING | 2] * n
            if len(args) > 1:
                self._write_file(args[1])
                states += [WRITE_EXECUTING | 4] * n
            self.script(*states, 0)
        elif name == "writefile":
            self._write_file(args[0])
            self.script(*([WRITE_EXECUTING | 4] * n), 0)
        elif name == "dezinger":
            self.script(*([DEZINGER_EXECUTING | 3] * n), 0)
        elif name == "abort":
            self.script(0)

    def send(self, command):
        if command.split(",")[0] in self.fail_on:
            raise CommunicationError(f"Send failed for {command!r}")
        self.sent.append(command)
        if self.registry is not None:
            self.registry.set(params.STRING_TO_SERVER, command)
        self._simulate(command)

    def send_and_receive(self, command, timeout=None):
        self.send(command)
        if command == "get_state":
            state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
            return hex(state)
        if command == "get_size":
            return f"{self.size[0]},{self.size[1]}"
        raise CommunicationError(f"No response for {command!r}")

    @property
    def commands(self):
        """Commands sent so far, without the get_state polls."""
        return [c for c in self.sent if c != "get_state"]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fake_driver(fake_client, tmp_path):
    """Driver on a FakeClient, with fast polling."""
    registry = params.ParameterRegistry(params.default_parameters(SIM_SIZE_X, SIM_SIZE_Y))
    registry.update({
        params.FILE_PATH: str(tmp_path),
        params.FILE_NAME: "test",
        params.TIFF_TIMEOUT: 1.0,
    })
    driver = MarCCDDriver(fake_client, registry, poll_delay=0.001, file_read_delay=0.005)
    yield driver
    driver.stop()


# ============================================================================
# Test Data Fixtures
# ============================================================================

def make_image(width=SIM_SIZE_X, height=SIM_SIZE_Y, offset=0):
    y, x = np.mgrid[0:height, 0:width]
    return ((x + y * width + offset) % 65536).astype(np.uint16)


def write_tiff(path, image, **kwargs):
    tifffile.imwrite(str(path), image, **kwargs)
    return str(path)


@pytest.fixture
def tiff_file(tmp_path):
    """A complete 16-bit TIFF of the default test size."""
    image = make_image()
    path = write_tiff(tmp_path / "complete.tif", image)
    return path, image


@pytest.fixture
def make_image_func():
    return make_image


@pytest.fixture
def write_tiff_func():
    return write_tiff
