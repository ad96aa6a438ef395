#!/usr/bin/env python3
"""
Caproto IOC for the MAR CCD Area Detector.

This IOC provides EPICS PVs for controlling a MAR CCD X-ray detector through
the marccd server in remote mode, and for reading back the images it writes.

Features:
- Normal, Raw, Background and DoubleCorrelation frame types
- Optional detector-controlled shutter with open/close delay compensation
- Overlap mode (next exposure may start while the last frame is written)
- Image data is read from the TIFF file written by marccd

PV Structure (following NSLS-II areaDetector conventions):
- {Prefix}Acquire            - Start/stop acquisition
- {Prefix}AcquireTime        - Exposure time (s)
- {Prefix}FrameType          - 0=Normal, 1=Background, 2=Raw, 3=DoubleCorrelation
- {Prefix}AutoSave           - Write a TIFF file for each frame
- {Prefix}WriteFile          - Save the current frame manually
- {Prefix}BinX / BinY        - Detector binning
- {Prefix}DetectorState_RBV  - 0=Idle, 1=Acquire, 2=Readout, 3=Correct, 4=Saving, 6=Error
- {Prefix}MAR_*_STATUS       - Raw task status bits from the marccd status word
- {Prefix}IMAGE              - Last image (flattened, row-major)

Communication:
- Connects to the marccd server (or sim/MarCCDSimServer.py) over TCP

Usage:
    python marccd_areadetector_ioc.py --list-pvs
    python marccd_areadetector_ioc.py --prefix SIM:MARCCD: --server-host localhost --server-port 2222
"""

import asyncio
import logging
import queue
from textwrap import dedent

import numpy as np
from caproto.server import PVGroup, pvproperty, run, template_arg_parser

from marccd import params
from marccd.exceptions import MarCCDError
from marccd.marccd_client import DEFAULT_TIMEOUT, MarCCDClient
from marccd.marccd_driver import MarCCDDriver

logger = logging.getLogger(__name__)

# Maximum image waveform size (full unbinned 2048 x 2048 detector)
MAX_IMAGE_SIZE = 2048 * 2048

POLL_PERIOD = 0.1


def setpoint(param_name, **kwargs):
    """pvproperty whose writes are forwarded to the driver's command dispatcher."""
    async def putter(group, instance, value):
        await group.dispatch(param_name, value)
        return value

    return pvproperty(put=putter, **kwargs)


class MarCCDIOC(PVGroup):
    """
    MAR CCD Area Detector IOC.

    Provides EPICS PVs for frame acquisition on a marccd server in remote mode.
    """

    # ==================== Connection PVs ====================

    connect_cmd = pvproperty(
        value=0, dtype=int, name="CONNECT",
        doc="Force (re)connection to the marccd server"
    )

    connected_rbv = pvproperty(
        value=0, dtype=int, name="CONNECTED_RBV", read_only=True,
        doc="Connection status (0=Disconnected, 1=Connected)"
    )

    # ==================== Detector Information ====================

    manufacturer_rbv = pvproperty(
        value="", dtype=str, name="Manufacturer_RBV", read_only=True,
        max_length=64, doc="Detector manufacturer"
    )

    model_rbv = pvproperty(
        value="", dtype=str, name="Model_RBV", read_only=True,
        max_length=64, doc="Detector model"
    )

    max_size_x_rbv = pvproperty(
        value=0, dtype=int, name="MaxSizeX_RBV", read_only=True,
        doc="Detector width (pixels)"
    )

    max_size_y_rbv = pvproperty(
        value=0, dtype=int, name="MaxSizeY_RBV", read_only=True,
        doc="Detector height (pixels)"
    )

    data_type_rbv = pvproperty(
        value="", dtype=str, name="DataType_RBV", read_only=True,
        max_length=16, doc="Pixel data type"
    )

    # ==================== Acquisition Control ====================

    acquire = pvproperty(
        value=0, dtype=int, name="Acquire",
        doc="Start/stop acquisition (0=Done, 1=Acquire)"
    )

    acquire_rbv = pvproperty(
        value=0, dtype=int, name="Acquire_RBV", read_only=True,
        doc="Acquisition status readback"
    )

    acquire_time = setpoint(
        params.ACQUIRE_TIME, value=1.0, dtype=float, name="AcquireTime",
        doc="Exposure time (s)"
    )

    acquire_time_rbv = pvproperty(
        value=1.0, dtype=float, name="AcquireTime_RBV", read_only=True,
        doc="Exposure time readback"
    )

    frame_type = setpoint(
        params.FRAME_TYPE, value=0, dtype=int, name="FrameType",
        doc="Frame type (0=Normal, 1=Background, 2=Raw, 3=DoubleCorrelation)"
    )

    frame_type_rbv = pvproperty(
        value=0, dtype=int, name="FrameType_RBV", read_only=True,
        doc="Frame type readback"
    )

    trigger_mode = setpoint(
        params.TRIGGER_MODE, value=0, dtype=int, name="TriggerMode",
        doc="Trigger mode (0=Internal, 1=External, 2=Alignment)"
    )

    trigger_mode_rbv = pvproperty(
        value=0, dtype=int, name="TriggerMode_RBV", read_only=True,
        doc="Trigger mode readback"
    )

    overlap = setpoint(
        params.OVERLAP, value=0, dtype=int, name="OVERLAP",
        doc="Start the next exposure before the file write completes"
    )

    overlap_rbv = pvproperty(
        value=0, dtype=int, name="OVERLAP_RBV", read_only=True,
        doc="Overlap mode readback"
    )

    tiff_timeout = setpoint(
        params.TIFF_TIMEOUT, value=20.0, dtype=float, name="TIFF_TIMEOUT",
        doc="Time to wait for a complete TIFF file (s)"
    )

    tiff_timeout_rbv = pvproperty(
        value=20.0, dtype=float, name="TIFF_TIMEOUT_RBV", read_only=True,
        doc="TIFF timeout readback"
    )

    # ==================== Shutter ====================

    shutter_mode = setpoint(
        params.SHUTTER_MODE, value=0, dtype=int, name="ShutterMode",
        doc="Shutter mode (0=None, 1=EPICS, 2=Detector)"
    )

    shutter_mode_rbv = pvproperty(
        value=0, dtype=int, name="ShutterMode_RBV", read_only=True,
        doc="Shutter mode readback"
    )

    shutter_open_delay = setpoint(
        params.SHUTTER_OPEN_DELAY, value=0.0, dtype=float, name="ShutterOpenDelay",
        doc="Shutter opening time (s)"
    )

    shutter_open_delay_rbv = pvproperty(
        value=0.0, dtype=float, name="ShutterOpenDelay_RBV", read_only=True,
        doc="Shutter open delay readback"
    )

    shutter_close_delay = setpoint(
        params.SHUTTER_CLOSE_DELAY, value=0.0, dtype=float, name="ShutterCloseDelay",
        doc="Shutter closing time (s)"
    )

    shutter_close_delay_rbv = pvproperty(
        value=0.0, dtype=float, name="ShutterCloseDelay_RBV", read_only=True,
        doc="Shutter close delay readback"
    )

    # ==================== Binning ====================

    bin_x = setpoint(
        params.BIN_X, value=2, dtype=int, name="BinX",
        doc="Binning in X"
    )

    bin_x_rbv = pvproperty(
        value=2, dtype=int, name="BinX_RBV", read_only=True,
        doc="Binning in X readback"
    )

    bin_y = setpoint(
        params.BIN_Y, value=2, dtype=int, name="BinY",
        doc="Binning in Y"
    )

    bin_y_rbv = pvproperty(
        value=2, dtype=int, name="BinY_RBV", read_only=True,
        doc="Binning in Y readback"
    )

    # ==================== File Saving ====================

    auto_save = setpoint(
        params.AUTO_SAVE, value=0, dtype=int, name="AutoSave",
        doc="Write a file for each frame (0=No, 1=Yes)"
    )

    auto_save_rbv = pvproperty(
        value=0, dtype=int, name="AutoSave_RBV", read_only=True,
        doc="Auto save readback"
    )

    write_file = pvproperty(
        value=0, dtype=int, name="WriteFile",
        doc="Save the current frame to a file"
    )

    write_file_rbv = pvproperty(
        value=0, dtype=int, name="WriteFile_RBV", read_only=True,
        doc="Write file busy readback"
    )

    file_path = setpoint(
        params.FILE_PATH, value="", dtype=str, name="FilePath",
        max_length=256, doc="Directory for image files (as seen by marccd)"
    )

    file_path_rbv = pvproperty(
        value="", dtype=str, name="FilePath_RBV", read_only=True,
        max_length=256, doc="File path readback"
    )

    file_name = setpoint(
        params.FILE_NAME, value="image", dtype=str, name="FileName",
        max_length=256, doc="Base file name"
    )

    file_name_rbv = pvproperty(
        value="image", dtype=str, name="FileName_RBV", read_only=True,
        max_length=256, doc="File name readback"
    )

    file_number = setpoint(
        params.FILE_NUMBER, value=1, dtype=int, name="FileNumber",
        doc="Next file number"
    )

    file_number_rbv = pvproperty(
        value=1, dtype=int, name="FileNumber_RBV", read_only=True,
        doc="File number readback"
    )

    auto_increment = setpoint(
        params.AUTO_INCREMENT, value=1, dtype=int, name="AutoIncrement",
        doc="Increment the file number after each file"
    )

    auto_increment_rbv = pvproperty(
        value=1, dtype=int, name="AutoIncrement_RBV", read_only=True,
        doc="Auto increment readback"
    )

    file_template = setpoint(
        params.FILE_TEMPLATE, value="%s%s_%3.3d.tif", dtype=str, name="FileTemplate",
        max_length=256, doc="printf template combining path, name and number"
    )

    file_template_rbv = pvproperty(
        value="%s%s_%3.3d.tif", dtype=str, name="FileTemplate_RBV", read_only=True,
        max_length=256, doc="File template readback"
    )

    full_file_name_rbv = pvproperty(
        value="", dtype=str, name="FullFileName_RBV", read_only=True,
        max_length=256, doc="Last file name sent to the server"
    )

    # ==================== Status ====================

    detector_state = pvproperty(
        value=0, dtype=int, name="DetectorState_RBV", read_only=True,
        doc="Detector state (0=Idle, 1=Acquire, 2=Readout, 3=Correct, 4=Saving, 5=Aborting, 6=Error)"
    )

    status_message = pvproperty(
        value="", dtype=str, name="StatusMessage_RBV", read_only=True,
        max_length=256, doc="Status message"
    )

    string_to_server = pvproperty(
        value="", dtype=str, name="StringToServer_RBV", read_only=True,
        max_length=256, doc="Last command sent to marccd"
    )

    string_from_server = pvproperty(
        value="", dtype=str, name="StringFromServer_RBV", read_only=True,
        max_length=256, doc="Last response from marccd"
    )

    time_remaining = pvproperty(
        value=0.0, dtype=float, name="TimeRemaining_RBV", read_only=True,
        doc="Exposure time remaining (s)"
    )

    array_counter = pvproperty(
        value=0, dtype=int, name="ArrayCounter_RBV", read_only=True,
        doc="Number of images acquired"
    )

    acquire_status = pvproperty(
        value=0, dtype=int, name="MAR_ACQUIRE_STATUS", read_only=True,
        doc="Acquire task status bits (1=Queued, 2=Executing, 4=Error)"
    )

    readout_status = pvproperty(
        value=0, dtype=int, name="MAR_READOUT_STATUS", read_only=True,
        doc="Readout task status bits"
    )

    correct_status = pvproperty(
        value=0, dtype=int, name="MAR_CORRECT_STATUS", read_only=True,
        doc="Correction task status bits"
    )

    writing_status = pvproperty(
        value=0, dtype=int, name="MAR_WRITING_STATUS", read_only=True,
        doc="Writing task status bits"
    )

    dezinger_status = pvproperty(
        value=0, dtype=int, name="MAR_DEZINGER_STATUS", read_only=True,
        doc="Dezinger task status bits"
    )

    # ==================== Image Data ====================

    image = pvproperty(
        value=[0] * 1000, dtype=int, name="IMAGE", read_only=True,
        max_length=MAX_IMAGE_SIZE, doc="Last image, row-major"
    )

    image_size_x = pvproperty(
        value=0, dtype=int, name="ImageSizeX_RBV", read_only=True,
        doc="Image width (pixels)"
    )

    image_size_y = pvproperty(
        value=0, dtype=int, name="ImageSizeY_RBV", read_only=True,
        doc="Image height (pixels)"
    )

    image_size = pvproperty(
        value=0, dtype=int, name="ImageSize_RBV", read_only=True,
        doc="Image size (bytes)"
    )

    # Registry parameter -> readback PV attribute
    READBACKS = {
        params.MANUFACTURER: "manufacturer_rbv",
        params.MODEL: "model_rbv",
        params.MAX_SIZE_X: "max_size_x_rbv",
        params.MAX_SIZE_Y: "max_size_y_rbv",
        params.DATA_TYPE: "data_type_rbv",
        params.ACQUIRE: "acquire_rbv",
        params.ACQUIRE_TIME: "acquire_time_rbv",
        params.FRAME_TYPE: "frame_type_rbv",
        params.TRIGGER_MODE: "trigger_mode_rbv",
        params.OVERLAP: "overlap_rbv",
        params.TIFF_TIMEOUT: "tiff_timeout_rbv",
        params.SHUTTER_MODE: "shutter_mode_rbv",
        params.SHUTTER_OPEN_DELAY: "shutter_open_delay_rbv",
        params.SHUTTER_CLOSE_DELAY: "shutter_close_delay_rbv",
        params.BIN_X: "bin_x_rbv",
        params.BIN_Y: "bin_y_rbv",
        params.AUTO_SAVE: "auto_save_rbv",
        params.WRITE_FILE: "write_file_rbv",
        params.FILE_PATH: "file_path_rbv",
        params.FILE_NAME: "file_name_rbv",
        params.FILE_NUMBER: "file_number_rbv",
        params.AUTO_INCREMENT: "auto_increment_rbv",
        params.FILE_TEMPLATE: "file_template_rbv",
        params.FULL_FILE_NAME: "full_file_name_rbv",
        params.DETECTOR_STATE: "detector_state",
        params.STATUS_MESSAGE: "status_message",
        params.STRING_TO_SERVER: "string_to_server",
        params.STRING_FROM_SERVER: "string_from_server",
        params.TIME_REMAINING: "time_remaining",
        params.ARRAY_COUNTER: "array_counter",
        params.IMAGE_SIZE_X: "image_size_x",
        params.IMAGE_SIZE_Y: "image_size_y",
        params.IMAGE_SIZE: "image_size",
        params.MAR_ACQUIRE_STATUS: "acquire_status",
        params.MAR_READOUT_STATUS: "readout_status",
        params.MAR_CORRECT_STATUS: "correct_status",
        params.MAR_WRITING_STATUS: "writing_status",
        params.MAR_DEZINGER_STATUS: "dezinger_status",
    }

    # Setpoints that return to 0 by themselves when the driver is done
    SELF_CLEARING = {
        params.ACQUIRE: "acquire",
        params.WRITE_FILE: "write_file",
    }

    # ==================== Internal State ====================

    def __init__(self, *args, server_host="localhost", server_port=2222,
                 max_size_x=params.DEFAULT_MAX_SIZE, max_size_y=params.DEFAULT_MAX_SIZE,
                 timeout=DEFAULT_TIMEOUT, driver=None, **kwargs):
        super().__init__(*args, **kwargs)
        if driver is None:
            registry = params.ParameterRegistry(params.default_parameters(max_size_x, max_size_y))
            client = MarCCDClient(server_host, server_port, timeout=timeout, registry=registry)
            driver = MarCCDDriver(client, registry, max_size_x=max_size_x,
                                  max_size_y=max_size_y, timeout=timeout)
        self._driver = driver
        self._images = queue.Queue(maxsize=4)
        self._driver.add_image_callback(self._queue_image)

    @property
    def driver(self) -> MarCCDDriver:
        return self._driver

    def _queue_image(self, artifact):
        """Image consumer; runs on the driver's worker thread."""
        try:
            self._images.put_nowait(artifact)
        except queue.Full:
            logger.warning("Dropping image %d, IOC is not keeping up", artifact.unique_id)

    async def dispatch(self, name, value):
        """Run a driver parameter write off the event loop."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._driver.write_param, name, value)

    # ==================== Startup / Poll Loop ====================

    @connected_rbv.startup
    async def connected_rbv(self, instance, async_lib):
        """Connect to the server, start the worker, then publish readbacks."""
        await self._connect_to_server()
        self._driver.start()
        while True:
            try:
                await self.update_readbacks()
            except Exception as e:
                logger.exception("Poll error: %s", e)
            await asyncio.sleep(POLL_PERIOD)

    async def update_readbacks(self):
        """Push changed driver parameters and new images to their PVs."""
        for name, value in self._driver.registry.pop_changes().items():
            attr = self.READBACKS.get(name)
            if attr is not None:
                if isinstance(value, str):
                    value = value[:255]
                await getattr(self, attr).write(value)
            setpoint_attr = self.SELF_CLEARING.get(name)
            if setpoint_attr is not None and not value:
                # Bypass the putter; this only mirrors the driver's state
                await getattr(self, setpoint_attr).write(0, verify_value=False)

        await self.connected_rbv.write(1 if self._driver.client.connected else 0)

        while True:
            try:
                artifact = self._images.get_nowait()
            except queue.Empty:
                break
            await self.image.write(artifact.data.ravel().astype(np.int32))

    async def _connect_to_server(self):
        client = self._driver.client
        await self.status_message.write(f"Connecting to {client.host}:{client.port}...")
        loop = asyncio.get_running_loop()
        try:
            if client.connected:
                await loop.run_in_executor(None, client.disconnect)
            await loop.run_in_executor(None, self._driver.connect)
        except MarCCDError as e:
            logger.error("Connection failed: %s", e)
            await self.status_message.write(f"Connection failed: {e}"[:256])
            await self.connected_rbv.write(0)
            return False
        await self.connected_rbv.write(1)
        await self.status_message.write(f"Connected to {client.host}:{client.port}")
        return True

    # ==================== PV Putters ====================

    @connect_cmd.putter
    async def connect_cmd(self, instance, value):
        """Handle connection request."""
        if value == 1:
            await self._connect_to_server()
        return 0

    @acquire.putter
    async def acquire(self, instance, value):
        """Handle acquisition start/stop."""
        await self.dispatch(params.ACQUIRE, int(value))
        return value

    @write_file.putter
    async def write_file(self, instance, value):
        """Save the current frame; the driver waits for the write to finish."""
        if value:
            await self.dispatch(params.WRITE_FILE, 1)
        return 0


def main():
    """Run the MAR CCD IOC."""
    parser, split_args = template_arg_parser(
        default_prefix="SIM:MARCCD:",
        desc=dedent(MarCCDIOC.__doc__),
        supported_async_libs=("asyncio",),
    )
    parser.add_argument("--server-host", default="localhost",
                        help="marccd server hostname")
    parser.add_argument("--server-port", type=int, default=2222,
                        help="marccd server port")
    parser.add_argument("--max-size-x", type=int, default=params.DEFAULT_MAX_SIZE,
                        help="Detector width in pixels")
    parser.add_argument("--max-size-y", type=int, default=params.DEFAULT_MAX_SIZE,
                        help="Detector height in pixels")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="Response timeout for marccd queries (s)")
    args = parser.parse_args()
    ioc_options, run_options = split_args(args)

    ioc = MarCCDIOC(
        server_host=args.server_host,
        server_port=args.server_port,
        max_size_x=args.max_size_x,
        max_size_y=args.max_size_y,
        timeout=args.timeout,
        **ioc_options,
    )
    run(ioc.pvdb, **run_options)


if __name__ == "__main__":
    main()
