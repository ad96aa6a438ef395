"""
Decoding of the marccd server status word.

The server answers ``get_state`` with a packed integer:

- bits 0-3: overall machine state (see ``MachineState``)
- bits 4*(task+1) .. 4*(task+1)+3: status flags of each task
  (acquire, read, correct, write, dezinger)

The machine state and the task flags are decoded independently; one is
never derived from the other.
"""

import logging
from enum import IntEnum, IntFlag

from marccd import params
from marccd.exceptions import CommunicationError

logger = logging.getLogger(__name__)

STATE_MASK = 0xF
STATUS_MASK = 0xF


class Task(IntEnum):
    ACQUIRE = 0
    READ = 1
    CORRECT = 2
    WRITE = 3
    DEZINGER = 4


class TaskFlag(IntFlag):
    QUEUED = 0x1
    EXECUTING = 0x2
    ERROR = 0x4
    RESERVED = 0x8


BUSY_FLAGS = TaskFlag.QUEUED | TaskFlag.EXECUTING


class MachineState(IntEnum):
    """Overall server state from the low nibble; >= BUSY are sub-states."""
    IDLE = 0
    ACQUIRE = 1
    READOUT = 2
    CORRECT = 3
    WRITING = 4
    ABORTING = 5
    UNAVAILABLE = 6
    ERROR = 7
    BUSY = 8


class DetectorStatus(IntEnum):
    """Coarse detector status, numbered like areaDetector ADStatus."""
    IDLE = 0
    ACQUIRE = 1
    READOUT = 2
    CORRECT = 3
    SAVING = 4
    ABORTING = 5
    ERROR = 6


# Task whose activity maps to each coarse status, in priority order
_ACTIVITY_ORDER = (
    (Task.ACQUIRE, DetectorStatus.ACQUIRE),
    (Task.READ, DetectorStatus.READOUT),
    (Task.CORRECT, DetectorStatus.CORRECT),
    (Task.WRITE, DetectorStatus.SAVING),
)

TASK_PARAMS = {
    Task.ACQUIRE: params.MAR_ACQUIRE_STATUS,
    Task.READ: params.MAR_READOUT_STATUS,
    Task.CORRECT: params.MAR_CORRECT_STATUS,
    Task.WRITE: params.MAR_WRITING_STATUS,
    Task.DEZINGER: params.MAR_DEZINGER_STATUS,
}


def task_status_mask(task: Task) -> int:
    return STATUS_MASK << (4 * (int(task) + 1))


def decode_task_status(word: int, task: Task) -> TaskFlag:
    return TaskFlag((word & task_status_mask(task)) >> (4 * (int(task) + 1)))


class StatusWord:
    """Immutable view of one status word returned by ``get_state``."""

    __slots__ = ("_raw",)

    def __init__(self, raw: int):
        self._raw = int(raw) & 0xFFFFFFFF

    @classmethod
    def parse(cls, text: str) -> "StatusWord":
        """Parse a reply, auto-detecting the base (``0x22``, ``34``, ``042``)."""
        text = text.strip()
        try:
            return cls(int(text, 0))
        except ValueError:
            # int(..., 0) rejects leading zeros; strtol reads those as octal
            if len(text) > 1 and text.startswith("0") and text.isdigit():
                try:
                    return cls(int(text, 8))
                except ValueError:
                    pass
            raise CommunicationError(f"Unparseable status word: {text!r}")

    @property
    def raw(self) -> int:
        return self._raw

    @property
    def state(self) -> int:
        """Raw machine state nibble."""
        return self._raw & STATE_MASK

    @property
    def machine_state(self) -> MachineState:
        state = self.state
        if state >= MachineState.BUSY:
            return MachineState.BUSY
        return MachineState(state)

    @property
    def is_machine_busy(self) -> bool:
        return self.state >= MachineState.BUSY

    def task_status(self, task: Task) -> TaskFlag:
        return decode_task_status(self._raw, task)

    def test(self, task: Task, flags: int) -> bool:
        return bool(self.task_status(task) & flags)

    def is_busy(self, task: Task) -> bool:
        """True while the task is queued or executing."""
        return self.test(task, BUSY_FLAGS)

    def has_error(self) -> bool:
        return any(self.test(task, TaskFlag.ERROR) for task in Task)

    def classify(self) -> DetectorStatus:
        return classify(self._raw)

    def __eq__(self, other):
        if isinstance(other, StatusWord):
            return self._raw == other._raw
        return NotImplemented

    def __hash__(self):
        return hash(self._raw)

    def __repr__(self):
        return f"StatusWord(0x{self._raw:08X})"


def classify(word: int) -> DetectorStatus:
    """
    Map a raw status word onto the coarse detector status.

    Any task error wins; otherwise the first active task of
    acquire/read/correct/write; otherwise Idle for an all-zero word.
    """
    if any(decode_task_status(word, task) & TaskFlag.ERROR for task in Task):
        return DetectorStatus.ERROR
    for task, status in _ACTIVITY_ORDER:
        if decode_task_status(word, task) & BUSY_FLAGS:
            return status
    if word == 0:
        return DetectorStatus.IDLE
    return DetectorStatus.ERROR


def publish_status(registry, status: StatusWord) -> DetectorStatus:
    """Write the per-task bitmasks and the coarse status into the registry."""
    for task, name in TASK_PARAMS.items():
        registry.set(name, int(status.task_status(task)))
    detector_status = status.classify()
    registry.set(params.DETECTOR_STATE, int(detector_status))
    return detector_status


def query_status(client, registry, timeout: float) -> StatusWord:
    """
    Ask the server for its state and publish the decoded result.

    A communication failure marks the detector as Error before re-raising.
    """
    try:
        reply = client.send_and_receive("get_state", timeout)
        status = StatusWord.parse(reply)
    except CommunicationError:
        registry.set(params.DETECTOR_STATE, int(DetectorStatus.ERROR))
        raise
    publish_status(registry, status)
    return status
