"""
MAR-CCD detector driver.

Runs acquisitions on a marccd server in remote mode. A dedicated worker
thread waits for an acquire request, drives the server through the command
sequence for the selected frame type while polling its status word, then
waits for the TIFF file the server writes and hands the image to the
registered consumers.

Threads:
- worker thread: ``worker_loop``; holds the driver lock except while parked
  waiting for a start request and while calling image consumers
- caller threads: ``write_param`` from the IOC; Acquire is handled without
  the driver lock so that a stop always reaches the server
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from marccd import params
from marccd.exceptions import AcquisitionAborted, CommunicationError, MarCCDError
from marccd.marccd_client import DEFAULT_TIMEOUT, MarCCDClient
from marccd.marccd_status import (
    BUSY_FLAGS,
    DetectorStatus,
    StatusWord,
    Task,
    TaskFlag,
    query_status,
)
from marccd.params import FrameType, ParameterRegistry, ShutterMode, Signal, create_file_name
from marccd.tiff_reader import FILE_READ_DELAY, read_image

logger = logging.getLogger(__name__)

# Time between status polls of the server
POLL_DELAY = 0.01
# Slice used while parked waiting for a start request
START_WAIT_SLICE = 0.1
# Minimum gap between shutter open and the start of the exposure timer
MIN_SHUTTER_DELAY = 0.001
# Exposure time of the two dark frames taken for a background
BACKGROUND_EXPOSURE = 0.001

# Server frame buffers used by "readout,<n>"
BUFFER_NORMAL = 0
BUFFER_BACKGROUND_1 = 1
BUFFER_BACKGROUND_2 = 2
BUFFER_RAW = 3


@dataclass(frozen=True)
class FrameRequest:
    """Acquisition settings, read once at the start of each acquisition."""
    frame_type: FrameType
    exposure_time: float
    auto_save: bool = False
    overlap: bool = False
    shutter_controlled: bool = False

    @classmethod
    def from_registry(cls, registry: ParameterRegistry) -> "FrameRequest":
        return cls(
            frame_type=FrameType(int(registry.get(params.FRAME_TYPE, 0))),
            exposure_time=float(registry.get(params.ACQUIRE_TIME, 1.0)),
            auto_save=bool(registry.get(params.AUTO_SAVE)),
            overlap=bool(registry.get(params.OVERLAP)),
            shutter_controlled=(
                int(registry.get(params.SHUTTER_MODE, 0)) == ShutterMode.DETECTOR),
        )

    @property
    def wait(self) -> bool:
        """Wait for the file write before returning, unless overlapping."""
        return not self.overlap


@dataclass
class ImageArtifact:
    """One completed image, handed to the consumer callbacks."""
    width: int
    height: int
    data: np.ndarray
    unique_id: int
    timestamp: float
    file_name: str = ""


class MarCCDDriver:
    """
    Controller for one marccd server.

    Args:
        client: Connection to the marccd server
        registry: Shared parameter store; a default one is created if omitted
        max_size_x: Detector width in pixels
        max_size_y: Detector height in pixels
        poll_delay: Time between status polls
        file_read_delay: Time between attempts to read the image file
        timeout: Response timeout for get_state / get_size
    """

    def __init__(self, client: MarCCDClient, registry: Optional[ParameterRegistry] = None,
                 max_size_x: int = params.DEFAULT_MAX_SIZE,
                 max_size_y: int = params.DEFAULT_MAX_SIZE,
                 poll_delay: float = POLL_DELAY,
                 file_read_delay: float = FILE_READ_DELAY,
                 timeout: float = DEFAULT_TIMEOUT):
        if registry is None:
            registry = ParameterRegistry(params.default_parameters(max_size_x, max_size_y))
        self.registry = registry
        self.client = client
        if client.registry is None:
            client.registry = registry
        self.poll_delay = poll_delay
        self.file_read_delay = file_read_delay
        self.timeout = timeout

        self.start_signal = Signal()
        self.abort_signal = Signal()
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._image_callbacks: List[Callable[[ImageArtifact], None]] = []
        self._last_error: Optional[str] = None

    # ==================== Lifecycle ====================

    def connect(self) -> None:
        """Connect to the server and read its current state."""
        self.client.connect()
        try:
            self.get_status()
        except CommunicationError as e:
            logger.error("Cannot read initial marccd state: %s", e)

    def start(self) -> None:
        """Start the acquisition worker thread."""
        if self._thread and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self.worker_loop, name="marCCDTask", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker thread and close the server connection."""
        self._shutdown.set()
        self.abort_signal.post()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.client.disconnect()

    def add_image_callback(self, callback: Callable[[ImageArtifact], None]) -> None:
        self._image_callbacks.append(callback)

    # ==================== Status ====================

    def get_status(self) -> StatusWord:
        """Poll the server state, publishing task and detector status."""
        return query_status(self.client, self.registry, self.timeout)

    def get_image_size(self) -> Tuple[int, int]:
        reply = self.client.send_and_receive("get_size", self.timeout)
        try:
            width, height = (int(v) for v in reply.split(","))
        except ValueError:
            raise CommunicationError(f"Unparseable image size: {reply!r}") from None
        self.registry.update({
            params.IMAGE_SIZE_X: width,
            params.IMAGE_SIZE_Y: height,
            params.IMAGE_SIZE: width * height * 2,
        })
        return width, height

    def _set_status_message(self, message: str) -> None:
        self.registry.set(params.STATUS_MESSAGE, message)

    def _pause(self, delay: float) -> None:
        """Sleep between polls; an abort request ends the wait with an error."""
        if self.abort_signal.peek(delay):
            raise AcquisitionAborted("Acquisition aborted")

    def _wait_task_idle(self, task: Task, flags: int = BUSY_FLAGS,
                        check_machine_busy: bool = True) -> StatusWord:
        status = self.get_status()
        while status.test(task, flags) or (check_machine_busy and status.is_machine_busy):
            self._pause(self.poll_delay)
            status = self.get_status()
        return status

    # ==================== Sequencer steps ====================

    def acquire_frame(self, exposure_time: float, use_shutter: bool) -> None:
        """Take one exposure on the server."""
        # Wait for the acquire task to be done with the previous acquisition, if any
        self._wait_task_idle(Task.ACQUIRE, TaskFlag.EXECUTING)

        self._set_status_message("Starting exposure")
        self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.ACQUIRE))
        self.client.send("start")

        # Wait for acquisition to actually start
        status = self.get_status()
        while not status.test(Task.ACQUIRE, TaskFlag.EXECUTING) or status.is_machine_busy:
            self._pause(self.poll_delay)
            status = self.get_status()

        close_delay = float(self.registry.get(params.SHUTTER_CLOSE_DELAY, 0.0))
        if use_shutter:
            self.client.send("shutter,1")
            # Open delay minus close delay keeps the real exposure equal to
            # the requested one
            open_delay = float(self.registry.get(params.SHUTTER_OPEN_DELAY, 0.0))
            time.sleep(max(open_delay - close_delay, MIN_SHUTTER_DELAY))

        start = time.monotonic()
        try:
            while True:
                remaining = max(exposure_time - (time.monotonic() - start), 0.0)
                self.registry.set(params.TIME_REMAINING, remaining)
                if remaining <= 0:
                    break
                self._pause(min(self.poll_delay, remaining))
        finally:
            if use_shutter:
                self.client.send("shutter,0")
                time.sleep(close_delay)

    def readout_frame(self, buffer_number: int, file_name: Optional[str], wait: bool) -> None:
        """Read the CCD into a server buffer, optionally writing it to a file."""
        # Wait for the readout task to be done with the previous frame, if any
        self._wait_task_idle(Task.READ)

        self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.READOUT))
        if file_name:
            self.client.send(f"readout,{buffer_number},{file_name}")
        else:
            self.client.send(f"readout,{buffer_number}")

        self._wait_task_idle(Task.READ, check_machine_busy=False)

        if not wait or not file_name:
            return
        self._wait_task_idle(Task.WRITE)

    def save_file(self, corrected: bool, wait: bool, file_name: Optional[str] = None) -> str:
        """Ask the server to write its current image; returns the file name."""
        # Wait for any previous write to complete
        self._wait_task_idle(Task.WRITE)
        if not file_name:
            file_name = create_file_name(self.registry)
        self.client.send(f"writefile,{file_name},{int(bool(corrected))}")
        if wait:
            self._wait_task_idle(Task.WRITE)
        return file_name

    def dezinger(self, use_background: bool) -> None:
        self.client.send(f"dezinger,{int(bool(use_background))}")
        self.wait_dezinger()

    def wait_dezinger(self) -> None:
        self._wait_task_idle(Task.DEZINGER)

    def run_sequence(self, request: FrameRequest, file_name: str) -> None:
        """Issue the command sequence for one frame of ``request.frame_type``."""
        frame_type = request.frame_type
        use_shutter = request.shutter_controlled

        if frame_type in (FrameType.NORMAL, FrameType.RAW):
            self.acquire_frame(request.exposure_time, use_shutter)
            buffer_number = BUFFER_NORMAL if frame_type == FrameType.NORMAL else BUFFER_RAW
            self.readout_frame(buffer_number, file_name, request.wait)

        elif frame_type == FrameType.BACKGROUND:
            self.acquire_frame(BACKGROUND_EXPOSURE, False)
            self.readout_frame(BUFFER_BACKGROUND_1, None, True)
            self.acquire_frame(BACKGROUND_EXPOSURE, False)
            self.readout_frame(BUFFER_BACKGROUND_2, None, True)
            self.dezinger(True)

        elif frame_type == FrameType.DOUBLE_CORRELATION:
            half = request.exposure_time / 2.0
            self.acquire_frame(half, use_shutter)
            self.readout_frame(BUFFER_BACKGROUND_2, None, True)
            self.acquire_frame(half, use_shutter)
            self.readout_frame(BUFFER_NORMAL, None, True)
            self.dezinger(False)
            if request.auto_save:
                self.save_file(True, True, file_name=file_name)

        else:
            raise MarCCDError(f"Unknown frame type {frame_type!r}")

    # ==================== Worker ====================

    def acquire_image(self, start_time: float) -> ImageArtifact:
        """Run one complete acquisition and read back the resulting image."""
        request = FrameRequest.from_registry(self.registry)
        file_name = create_file_name(self.registry) if request.auto_save else ""
        logger.info("Acquiring %s frame, exposure %.3fs, file %r",
                    request.frame_type.name, request.exposure_time, file_name)

        self.run_sequence(request, file_name)

        width, height = self.get_image_size()
        self._set_status_message(f"Reading TIFF file {file_name}")
        timeout = float(self.registry.get(params.TIFF_TIMEOUT, 20.0))
        data = read_image(file_name, start_time, timeout, width, height,
                          abort=self.abort_signal, poll_delay=self.file_read_delay)

        counter = int(self.registry.get(params.ARRAY_COUNTER, 0)) + 1
        self.registry.set(params.ARRAY_COUNTER, counter)
        return ImageArtifact(width=width, height=height, data=data,
                             unique_id=counter, timestamp=start_time, file_name=file_name)

    def worker_loop(self) -> None:
        """Acquisition thread body; runs until ``stop`` is called."""
        self._lock.acquire()
        try:
            while not self._shutdown.is_set():
                if not self.registry.get(params.ACQUIRE):
                    if not self._wait_for_start():
                        break
                    if not self.registry.get(params.ACQUIRE):
                        continue
                self._run_acquisition()
        finally:
            self._lock.release()

    def _wait_for_start(self) -> bool:
        if self._last_error is None:
            self._set_status_message("Waiting for acquire command")
            self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.IDLE))
        # Release the lock while we wait for a start request, then lock again
        self._lock.release()
        try:
            logger.debug("Waiting for acquire to start")
            while not self.start_signal.wait(START_WAIT_SLICE):
                if self._shutdown.is_set():
                    return False
        finally:
            self._lock.acquire()
        return not self._shutdown.is_set()

    def _run_acquisition(self) -> None:
        self.abort_signal.clear()
        self._last_error = None
        start_time = time.time()
        try:
            artifact = self.acquire_image(start_time)
        except AcquisitionAborted:
            logger.info("Acquisition aborted")
            self._set_status_message("Acquisition aborted")
            self._last_error = "Acquisition aborted"
            self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.IDLE))
        except MarCCDError as e:
            logger.error("Acquisition failed: %s", e)
            self._last_error = str(e)
            self._set_status_message(str(e)[:256])
            self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.ERROR))
        except Exception as e:
            # Keep the worker alive for the next acquisition
            logger.exception("Unexpected error during acquisition")
            self._last_error = f"Unexpected error: {e}"
            self._set_status_message(self._last_error[:256])
            self.registry.set(params.DETECTOR_STATE, int(DetectorStatus.ERROR))
        else:
            self._publish(artifact)
        finally:
            self.registry.set(params.TIME_REMAINING, 0.0)
            self.registry.set(params.ACQUIRE, 0)

    def _publish(self, artifact: ImageArtifact) -> None:
        # Consumers may call back into the driver, so they run without the lock
        self._lock.release()
        try:
            logger.debug("Publishing image %d", artifact.unique_id)
            for callback in list(self._image_callbacks):
                try:
                    callback(artifact)
                except Exception:
                    logger.exception("Image callback %r failed", callback)
        finally:
            self._lock.acquire()

    # ==================== Command dispatch ====================

    def write_param(self, name: str, value) -> None:
        """Store a parameter written from outside and apply its side effects."""
        self.registry.set(name, value)
        try:
            if name == params.ACQUIRE:
                self._write_acquire(value)
            elif name in (params.BIN_X, params.BIN_Y):
                bin_x = int(self.registry.get(params.BIN_X))
                bin_y = int(self.registry.get(params.BIN_Y))
                with self._lock:
                    self.client.send(f"set_bin,{bin_x},{bin_y}")
            elif name == params.WRITE_FILE and value:
                self._write_file()
        except AcquisitionAborted as e:
            self._set_status_message(str(e))
        except MarCCDError as e:
            logger.error("Error writing %s=%r: %s", name, value, e)
            self._set_status_message(str(e)[:256])

    def _write_acquire(self, value) -> None:
        if value:
            state = self.registry.get(params.DETECTOR_STATE)
            if state in (DetectorStatus.IDLE, DetectorStatus.ERROR):
                # Wake up the worker thread
                self.start_signal.post()
        else:
            # This was a command to stop acquisition
            self.abort_signal.post()
            self.client.send("abort")

    def _write_file(self) -> None:
        frame_type = int(self.registry.get(params.FRAME_TYPE, 0))
        corrected = frame_type != FrameType.RAW
        try:
            with self._lock:
                self.abort_signal.clear()
                self._set_status_message("Saving file")
                file_name = self.save_file(corrected, True)
                self._set_status_message(f"Saved {file_name}")
        finally:
            self.registry.set(params.WRITE_FILE, 0)

    # ==================== Reporting ====================

    def report(self, details: int = 0) -> str:
        lines = [f"MAR-CCD detector {self.client.host}:{self.client.port}"]
        if details > 0:
            values = self.registry.snapshot()
            lines.append(f"  NX, NY:            {values.get(params.MAX_SIZE_X)}  "
                         f"{values.get(params.MAX_SIZE_Y)}")
            lines.append(f"  Data type:         {values.get(params.DATA_TYPE)}")
            lines.append(f"  Connected:         {self.client.connected}")
            lines.append(f"  Status:            {values.get(params.STATUS_MESSAGE)}")
            lines.append(f"  Images acquired:   {values.get(params.ARRAY_COUNTER)}")
        return "\n".join(lines)
