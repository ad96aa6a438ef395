#!/usr/bin/env python3
"""
marccd Remote Mode Simulator

Simulates the remote-mode command interface of the marccd server for a MAR
CCD detector, closely enough to exercise the IOC driver end to end.

Protocol Summary:
- TCP server (default port 2222)
- ASCII commands, one per line, terminated with newline
- Only the queries get_state and get_size send a reply line
- Commands: start, abort, shutter,<0|1>, set_bin,<x>,<y>,
  readout,<buffer>[,<file>], writefile,<file>,<corrected>, dezinger,<0|1>,
  get_state, get_size

The server's work is modelled as five tasks (acquire, read, correct, write,
dezinger), each with queued/executing/error flags, packed into the status
word returned by get_state. Image files are 16-bit TIFFs written with
tifffile; each file is written in two stages so that readers can observe a
partially written file.

Usage:
    python MarCCDSimServer.py --port 2222 --size-x 2048 --size-y 2048
"""

import argparse
import io
import logging
import socketserver
import sys
import threading
import time
from typing import Dict, Optional

import numpy as np
import tifffile

logger = logging.getLogger("marccd_sim")

TASK_ACQUIRE = 0
TASK_READ = 1
TASK_CORRECT = 2
TASK_WRITE = 3
TASK_DEZINGER = 4

QUEUED = 0x1
EXECUTING = 0x2
ERROR = 0x4

STATE_IDLE = 0
STATE_ACQUIRE = 1
STATE_READOUT = 2
STATE_CORRECT = 3
STATE_WRITING = 4
STATE_ABORTING = 5

DEFAULT_PORT = 2222


class MarCCDSimulator:
    """
    Detector state shared by all connections.

    Task transitions run on short-lived background threads so that the
    client sees queued and executing flags for a realistic amount of time.
    """

    def __init__(self, size_x: int = 2048, size_y: int = 2048,
                 readout_time: float = 0.05, correct_time: float = 0.02,
                 write_time: float = 0.05, dezinger_time: float = 0.02,
                 start_latency: float = 0.01, state_base: int = 16):
        self.size_x = size_x
        self.size_y = size_y
        self.bin_x = 1
        self.bin_y = 1
        self.readout_time = readout_time
        self.correct_time = correct_time
        self.write_time = write_time
        self.dezinger_time = dezinger_time
        self.start_latency = start_latency
        self.state_base = state_base

        self._lock = threading.Lock()
        self.task_flags: Dict[int, int] = {task: 0 for task in range(5)}
        self.machine_state = STATE_IDLE
        self.shutter_open = False
        self.buffers: Dict[int, np.ndarray] = {}
        self.last_image: Optional[np.ndarray] = None
        self.exposure_started: Optional[float] = None
        self.commands = []
        self.files_written = []
        self._frame_count = 0

    # ==================== Status ====================

    def status_word(self) -> int:
        with self._lock:
            word = self.machine_state & 0xF
            for task, flags in self.task_flags.items():
                word |= (flags & 0xF) << (4 * (task + 1))
            return word

    def format_state(self) -> str:
        word = self.status_word()
        if self.state_base == 16:
            return f"0x{word:08x}"
        if self.state_base == 8:
            return f"0{word:o}" if word else "0"
        return str(word)

    def image_size(self):
        return self.size_x // self.bin_x, self.size_y // self.bin_y

    def _set_task(self, task: int, flags: int, state: Optional[int] = None) -> None:
        with self._lock:
            self.task_flags[task] = flags
            if state is not None:
                self.machine_state = state
            elif not any(f & (QUEUED | EXECUTING) for f in self.task_flags.values()):
                self.machine_state = STATE_IDLE

    def _run_later(self, target, *args) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    # ==================== Commands ====================

    def execute(self, line: str) -> Optional[str]:
        """Execute one command line; returns the reply line, if any."""
        self.commands.append(line)
        parts = line.split(",")
        name, args = parts[0], parts[1:]

        if name == "get_state":
            return self.format_state()
        if name == "get_size":
            width, height = self.image_size()
            return f"{width},{height}"
        if name == "start":
            self._set_task(TASK_ACQUIRE, QUEUED)
            self._run_later(self._start_exposure)
        elif name == "abort":
            self._abort()
        elif name == "shutter" and args:
            self.shutter_open = args[0] == "1"
        elif name == "set_bin" and len(args) >= 2:
            self.bin_x = max(1, int(args[0]))
            self.bin_y = max(1, int(args[1]))
        elif name == "readout" and args:
            file_name = args[1] if len(args) > 1 else ""
            self._set_task(TASK_ACQUIRE, 0)
            self._set_task(TASK_READ, QUEUED, STATE_READOUT)
            if file_name:
                self._set_task(TASK_WRITE, QUEUED)
            self._run_later(self._readout, int(args[0]), file_name)
        elif name == "writefile" and args:
            corrected = len(args) > 1 and args[1] == "1"
            self._set_task(TASK_WRITE, QUEUED, STATE_WRITING)
            self._run_later(self._write, args[0], corrected)
        elif name == "dezinger" and args:
            self._set_task(TASK_DEZINGER, QUEUED)
            self._run_later(self._dezinger, args[0] == "1")
        else:
            logger.warning("Unknown command: %s", line)
        return None

    def _start_exposure(self) -> None:
        time.sleep(self.start_latency)
        self.exposure_started = time.time()
        self._set_task(TASK_ACQUIRE, EXECUTING, STATE_ACQUIRE)

    def _abort(self) -> None:
        with self._lock:
            self.machine_state = STATE_ABORTING
            for task in self.task_flags:
                self.task_flags[task] = 0
        self._set_task(TASK_ACQUIRE, 0, STATE_IDLE)

    def _make_frame(self) -> np.ndarray:
        width, height = self.image_size()
        self._frame_count += 1
        y, x = np.mgrid[0:height, 0:width]
        frame = (x + y * 3 + self._frame_count * 100) % 65536
        return frame.astype(np.uint16)

    def _readout(self, buffer_number: int, file_name: str) -> None:
        self._set_task(TASK_READ, EXECUTING, STATE_READOUT)
        time.sleep(self.readout_time)
        frame = self._make_frame()
        self.buffers[buffer_number] = frame
        self.last_image = frame
        if buffer_number == 0:
            # Normal frames are corrected before they can be written
            self._set_task(TASK_CORRECT, EXECUTING, STATE_CORRECT)
            self._set_task(TASK_READ, 0)
            time.sleep(self.correct_time)
            self._set_task(TASK_CORRECT, 0)
        else:
            self._set_task(TASK_READ, 0)
        if file_name:
            self._write(file_name, buffer_number == 0)

    def _write(self, file_name: str, corrected: bool) -> None:
        self._set_task(TASK_WRITE, EXECUTING, STATE_WRITING)
        image = self.last_image if self.last_image is not None else self._make_frame()
        try:
            write_tiff_in_stages(file_name, image, self.write_time)
            self.files_written.append(file_name)
            self._set_task(TASK_WRITE, 0)
        except OSError as e:
            logger.error("Cannot write %s: %s", file_name, e)
            self._set_task(TASK_WRITE, ERROR)

    def _dezinger(self, use_background: bool) -> None:
        self._set_task(TASK_DEZINGER, EXECUTING, STATE_CORRECT)
        time.sleep(self.dezinger_time)
        first = self.buffers.get(1 if use_background else 2)
        second = self.buffers.get(2 if use_background else 0)
        if first is not None and second is not None and first.shape == second.shape:
            self.last_image = np.minimum(first, second)
        self._set_task(TASK_DEZINGER, 0)


def write_tiff_in_stages(file_name: str, image: np.ndarray, duration: float) -> None:
    """Write a TIFF file non-atomically: first half, pause, then the rest."""
    bio = io.BytesIO()
    tifffile.imwrite(bio, image)
    data = bio.getvalue()
    half = len(data) // 2
    with open(file_name, "wb") as f:
        f.write(data[:half])
        f.flush()
        time.sleep(duration)
        f.write(data[half:])


class MarCCDSimHandler(socketserver.StreamRequestHandler):
    """TCP handler; instantiated once per client connection."""

    def handle(self):
        logger.info("Client connected from %s", self.client_address)
        simulator = self.server.simulator
        while True:
            try:
                raw_line = self.rfile.readline()
                if not raw_line:
                    break
                line = raw_line.decode("ascii", errors="replace").strip()
                if not line:
                    continue
                logger.debug("RX: %s", line)
                response = simulator.execute(line)
                if response is not None:
                    logger.debug("TX: %s", response)
                    self.wfile.write((response + "\n").encode("ascii"))
                    self.wfile.flush()
            except ConnectionResetError:
                logger.info("Connection reset by client")
                break
        logger.info("Client disconnected")


class MarCCDSimServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, simulator: Optional[MarCCDSimulator] = None):
        super().__init__(server_address, MarCCDSimHandler)
        self.simulator = simulator or MarCCDSimulator()


def main():
    parser = argparse.ArgumentParser(description="marccd remote mode simulator")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--size-x", type=int, default=2048)
    parser.add_argument("--size-y", type=int, default=2048)
    parser.add_argument("--readout-time", type=float, default=0.5)
    parser.add_argument("--write-time", type=float, default=0.2)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
    )

    simulator = MarCCDSimulator(size_x=args.size_x, size_y=args.size_y,
                                readout_time=args.readout_time, write_time=args.write_time)
    logger.info("marccd remote mode simulator listening on %s:%d", args.host, args.port)
    try:
        with MarCCDSimServer((args.host, args.port), simulator) as server:
            server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
