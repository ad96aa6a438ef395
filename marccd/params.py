"""
Parameter registry for the MAR-CCD driver.

Holds the named settings and readbacks shared between the acquisition
worker thread, the command dispatcher and the IOC. Parameter names follow
the areaDetector conventions (Acquire, AcquireTime, FrameType, ...) so the
IOC can map them one-to-one onto PVs.
"""

import os
import threading
from enum import IntEnum
from typing import Any, Dict, Optional


class FrameType(IntEnum):
    """Frame type, selects the command sequence run for one acquisition."""
    NORMAL = 0
    BACKGROUND = 1
    RAW = 2
    DOUBLE_CORRELATION = 3


class TriggerMode(IntEnum):
    INTERNAL = 0
    EXTERNAL = 1
    ALIGNMENT = 2


class ShutterMode(IntEnum):
    """Shutter mode; only DETECTOR makes the server drive the shutter."""
    NONE = 0
    EPICS = 1
    DETECTOR = 2


# ==================== Parameter names ====================

# Detector information
MANUFACTURER = "Manufacturer"
MODEL = "Model"
MAX_SIZE_X = "MaxSizeX"
MAX_SIZE_Y = "MaxSizeY"
DATA_TYPE = "DataType"

# Acquisition setup
ACQUIRE = "Acquire"
ACQUIRE_TIME = "AcquireTime"
ACQUIRE_PERIOD = "AcquirePeriod"
NUM_IMAGES = "NumImages"
TRIGGER_MODE = "TriggerMode"
FRAME_TYPE = "FrameType"
OVERLAP = "Overlap"
SHUTTER_MODE = "ShutterMode"
SHUTTER_OPEN_DELAY = "ShutterOpenDelay"
SHUTTER_CLOSE_DELAY = "ShutterCloseDelay"
BIN_X = "BinX"
BIN_Y = "BinY"
TIFF_TIMEOUT = "TiffTimeout"

# File saving
AUTO_SAVE = "AutoSave"
WRITE_FILE = "WriteFile"
FILE_PATH = "FilePath"
FILE_NAME = "FileName"
FILE_NUMBER = "FileNumber"
FILE_TEMPLATE = "FileTemplate"
AUTO_INCREMENT = "AutoIncrement"
FULL_FILE_NAME = "FullFileName"

# Status and readbacks
DETECTOR_STATE = "DetectorState"
STATUS_MESSAGE = "StatusMessage"
STRING_TO_SERVER = "StringToServer"
STRING_FROM_SERVER = "StringFromServer"
TIME_REMAINING = "TimeRemaining"
ARRAY_COUNTER = "ArrayCounter"
IMAGE_SIZE_X = "ImageSizeX"
IMAGE_SIZE_Y = "ImageSizeY"
IMAGE_SIZE = "ImageSize"

# Per-task status bitmasks from the server status word
MAR_ACQUIRE_STATUS = "MarAcquireStatus"
MAR_READOUT_STATUS = "MarReadoutStatus"
MAR_CORRECT_STATUS = "MarCorrectStatus"
MAR_WRITING_STATUS = "MarWritingStatus"
MAR_DEZINGER_STATUS = "MarDezingerStatus"

DEFAULT_MAX_SIZE = 2048


def default_parameters(max_size_x: int = DEFAULT_MAX_SIZE,
                       max_size_y: int = DEFAULT_MAX_SIZE) -> Dict[str, Any]:
    """Initial parameter values, matching the driver start-up defaults."""
    return {
        MANUFACTURER: "MAR",
        MODEL: "CCD",
        MAX_SIZE_X: max_size_x,
        MAX_SIZE_Y: max_size_y,
        DATA_TYPE: "UInt16",
        ACQUIRE: 0,
        ACQUIRE_TIME: 1.0,
        ACQUIRE_PERIOD: 0.0,
        NUM_IMAGES: 1,
        TRIGGER_MODE: int(TriggerMode.INTERNAL),
        FRAME_TYPE: int(FrameType.NORMAL),
        OVERLAP: 0,
        SHUTTER_MODE: int(ShutterMode.NONE),
        SHUTTER_OPEN_DELAY: 0.0,
        SHUTTER_CLOSE_DELAY: 0.0,
        BIN_X: 2,
        BIN_Y: 2,
        TIFF_TIMEOUT: 20.0,
        AUTO_SAVE: 0,
        WRITE_FILE: 0,
        FILE_PATH: "",
        FILE_NAME: "image",
        FILE_NUMBER: 1,
        FILE_TEMPLATE: "%s%s_%3.3d.tif",
        AUTO_INCREMENT: 1,
        FULL_FILE_NAME: "",
        DETECTOR_STATE: 0,
        STATUS_MESSAGE: "",
        STRING_TO_SERVER: "",
        STRING_FROM_SERVER: "",
        TIME_REMAINING: 0.0,
        ARRAY_COUNTER: 0,
        IMAGE_SIZE_X: max_size_x,
        IMAGE_SIZE_Y: max_size_y,
        IMAGE_SIZE: 0,
        MAR_ACQUIRE_STATUS: 0,
        MAR_READOUT_STATUS: 0,
        MAR_CORRECT_STATUS: 0,
        MAR_WRITING_STATUS: 0,
        MAR_DEZINGER_STATUS: 0,
    }


class ParameterRegistry:
    """
    Thread-safe store of named driver parameters.

    Every ``set`` that changes a value marks the name as changed; the IOC
    drains these with ``pop_changes`` and pushes them to its readback PVs.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = dict(initial or {})
        self._changed = set(self._values)

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        with self._lock:
            if name in self._values and self._values[name] == value:
                return
            self._values[name] = value
            self._changed.add(name)

    def update(self, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            self.set(name, value)

    def pop_changes(self) -> Dict[str, Any]:
        """Return changed parameters with their current values and reset."""
        with self._lock:
            changes = {name: self._values[name] for name in self._changed}
            self._changed.clear()
        return changes

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)


class Signal:
    """
    Binary signal with "posted" semantics.

    A post made before anyone waits is still seen by the next wait; posting
    several times before a wait counts once.
    """

    def __init__(self):
        self._event = threading.Event()

    def post(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for a post and consume it. Returns False on timeout."""
        if self._event.wait(timeout):
            self._event.clear()
            return True
        return False

    def peek(self, timeout: Optional[float] = None) -> bool:
        """Wait for a post without consuming it."""
        return self._event.wait(timeout)


def create_file_name(registry: ParameterRegistry) -> str:
    """
    Build the next full file name from FilePath, FileName and FileNumber.

    FileNumber is incremented afterwards when AutoIncrement is set.
    """
    file_path = registry.get(FILE_PATH, "") or ""
    if file_path and not file_path.endswith(os.sep):
        file_path += os.sep
    file_name = registry.get(FILE_NAME, "")
    file_number = int(registry.get(FILE_NUMBER, 0))
    template = registry.get(FILE_TEMPLATE) or "%s%s_%3.3d.tif"

    full_name = template % (file_path, file_name, file_number)
    if registry.get(AUTO_INCREMENT):
        registry.set(FILE_NUMBER, file_number + 1)
    registry.set(FULL_FILE_NAME, full_name)
    return full_name
