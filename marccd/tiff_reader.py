"""
Reader for the TIFF files written by the marccd server.

The server writes image files asynchronously and not atomically, so a file
that exists is not necessarily complete. ``read_image`` first waits for a
file that is newer than the acquisition start, then keeps re-opening it
until the header dimensions and the amount of strip data both match what we
expect. It is not a general TIFF reader: it assumes 16-bit single-page
images, which is what marccd produces.
"""

import contextlib
import logging
import os
import struct
import threading
import time
from typing import Optional

import numpy as np
import tifffile

from marccd.exceptions import (
    AcquisitionAborted,
    FileCreationTimeout,
    FileReadTimeout,
    TiffValidationError,
)

logger = logging.getLogger(__name__)

# Time between checks for the file to be complete
FILE_READ_DELAY = 0.01
# Allowed clock skew between this host and the host serving the file system
CLOCK_SKEW_TOLERANCE = 10.0
BYTES_PER_PIXEL = 2

_OPEN_ERRORS = (OSError, ValueError, IndexError, KeyError, struct.error, tifffile.TiffFileError)

# tifffile logs its own complaints about partly written files; they are
# dropped during a read attempt, whose outcome is reported here instead
_attempt = threading.local()


class _AttemptFilter(logging.Filter):
    def filter(self, record):
        return not getattr(_attempt, "active", False)


logging.getLogger("tifffile").addFilter(_AttemptFilter())


@contextlib.contextmanager
def _quiet_tifffile():
    previous = getattr(_attempt, "active", False)
    _attempt.active = True
    try:
        yield
    finally:
        _attempt.active = previous


def _pause(abort, delay: float) -> None:
    """Sleep for ``delay``, returning early with an exception on abort."""
    if abort is None:
        time.sleep(delay)
    elif abort.peek(delay):
        raise AcquisitionAborted("Aborted while waiting for image file")


def wait_for_file(path: str, reference_time: float, timeout: float,
                  abort=None, poll_delay: float = FILE_READ_DELAY,
                  start: Optional[float] = None) -> None:
    """
    Wait for ``path`` to exist with a modification time no older than
    ``reference_time`` minus the clock skew tolerance.

    ``timeout == 0`` skips the age check; that is used for flat field and
    background files which are not freshly written.
    """
    if start is None:
        start = time.monotonic()
    file_exists = False
    elapsed = 0.0
    while elapsed <= timeout:
        try:
            stat = os.stat(path) if path else None
        except OSError:
            stat = None
        if stat is not None:
            if timeout == 0:
                return
            file_exists = True
            if stat.st_mtime - reference_time > -CLOCK_SKEW_TOLERANCE:
                return
        _pause(abort, poll_delay)
        elapsed = time.monotonic() - start

    message = f"Timeout waiting for file to be created {path!r}"
    if file_exists:
        message += (f"; file exists but is more than {CLOCK_SKEW_TOLERANCE:g} seconds old, "
                    "possible clock synchronization problem")
    logger.error(message)
    raise FileCreationTimeout(message)


def read_tiff_strips(path: str, expected_width: int, expected_height: int) -> np.ndarray:
    """
    Read a complete image in one attempt.

    Raises TiffValidationError if the file cannot be parsed yet, has the
    wrong dimensions, or holds less strip data than a full image.
    """
    with _quiet_tifffile():
        return _read_tiff_strips(path, expected_width, expected_height)


def _read_tiff_strips(path: str, expected_width: int, expected_height: int) -> np.ndarray:
    expected_bytes = expected_width * expected_height * BYTES_PER_PIXEL
    try:
        tif = tifffile.TiffFile(path)
    except _OPEN_ERRORS as e:
        raise TiffValidationError(f"Cannot open TIFF file {path}: {e}") from e

    with tif:
        try:
            page = tif.pages[0]
            width = page.imagewidth
            length = page.imagelength
            bits = page.bitspersample
            compression = int(page.compression)
            offsets = page.dataoffsets
            byte_counts = page.databytecounts
        except _OPEN_ERRORS as e:
            raise TiffValidationError(f"Cannot read TIFF header {path}: {e}") from e

        if width != expected_width:
            raise TiffValidationError(
                f"Image width incorrect = {width}, should be {expected_width}")
        if length != expected_height:
            raise TiffValidationError(
                f"Image length incorrect = {length}, should be {expected_height}")
        if bits != 8 * BYTES_PER_PIXEL:
            raise TiffValidationError(f"Unexpected bits per sample = {bits}")

        if compression != 1:
            # Compressed strips cannot be size-checked on disk; decode instead
            try:
                image = page.asarray()
            except Exception as e:
                # zlib and other codecs raise their own errors on truncated data
                raise TiffValidationError(f"Error decoding TIFF file {path}: {e}") from e
            if image.nbytes != expected_bytes:
                raise TiffValidationError(
                    f"File size incorrect = {image.nbytes}, should be {expected_bytes}")
            return np.ascontiguousarray(image, dtype=np.uint16).reshape(
                expected_height, expected_width)

        buffer = bytearray(expected_bytes)
        fh = tif.filehandle
        total_size = 0
        for offset, count in zip(offsets, byte_counts):
            if total_size >= expected_bytes:
                break
            count = min(count, expected_bytes - total_size)
            try:
                fh.seek(offset)
                chunk = fh.read(count)
            except OSError as e:
                raise TiffValidationError(f"Error reading TIFF file {path}: {e}") from e
            if len(chunk) != count:
                # Most commonly the file is not completely written yet
                raise TiffValidationError(
                    f"Short strip read in {path}: got {len(chunk)} of {count} bytes")
            buffer[total_size:total_size + count] = chunk
            total_size += count

        if total_size != expected_bytes:
            raise TiffValidationError(
                f"File size incorrect = {total_size}, should be {expected_bytes}")

        dtype = np.dtype(tif.byteorder + "u2")

    data = np.frombuffer(buffer, dtype=dtype).astype(np.uint16)
    return data.reshape(expected_height, expected_width)


def read_image(path: str, reference_time: float, timeout: float,
               expected_width: int, expected_height: int,
               abort=None, poll_delay: float = FILE_READ_DELAY) -> np.ndarray:
    """
    Wait for a fresh, completely written marccd TIFF file and return its pixels.

    Args:
        path: Full path of the image file
        reference_time: Acquisition start time (epoch seconds); older files are
            leftovers from a previous run
        timeout: Overall time budget in seconds for both waiting phases; 0
            disables the age check and makes a single attempt
        expected_width: Image width the server reported
        expected_height: Image height the server reported
        abort: Optional Signal; posting it ends the wait with AcquisitionAborted
        poll_delay: Time between retries

    Returns:
        uint16 array of shape (expected_height, expected_width)
    """
    start = time.monotonic()
    wait_for_file(path, reference_time, timeout, abort=abort,
                  poll_delay=poll_delay, start=start)

    # The file exists, but may not be completely written yet
    elapsed = 0.0
    last_error = None
    while elapsed <= timeout:
        try:
            return read_tiff_strips(path, expected_width, expected_height)
        except TiffValidationError as e:
            last_error = e
            logger.debug("%s, retrying", e)
        _pause(abort, poll_delay)
        elapsed = time.monotonic() - start

    message = f"Timeout waiting for complete TIFF file {path!r}"
    if last_error is not None:
        message += f": {last_error}"
    logger.error(message)
    raise FileReadTimeout(message)
