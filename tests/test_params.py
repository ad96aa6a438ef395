"""
Tests for the parameter registry, signals and file naming.
"""

import os
import threading
import time

from marccd import params
from marccd.params import ParameterRegistry, Signal, create_file_name


class TestParameterRegistry:
    """Tests for the shared parameter store."""

    def test_initial_values_are_changed(self):
        """Test that every initial parameter is reported once."""
        registry = ParameterRegistry({"A": 1, "B": "x"})
        assert registry.pop_changes() == {"A": 1, "B": "x"}
        assert registry.pop_changes() == {}

    def test_set_marks_only_real_changes(self):
        registry = ParameterRegistry({"A": 1})
        registry.pop_changes()
        registry.set("A", 1)
        assert registry.pop_changes() == {}
        registry.set("A", 2)
        registry.set("C", 0)
        assert registry.pop_changes() == {"A": 2, "C": 0}

    def test_get_default(self):
        registry = ParameterRegistry()
        assert registry.get("missing") is None
        assert registry.get("missing", 5) == 5

    def test_snapshot_is_a_copy(self):
        registry = ParameterRegistry({"A": 1})
        snap = registry.snapshot()
        snap["A"] = 99
        assert registry.get("A") == 1

    def test_defaults(self):
        """Test start-up defaults."""
        values = params.default_parameters(1024, 512)
        assert values[params.MAX_SIZE_X] == 1024
        assert values[params.MAX_SIZE_Y] == 512
        assert values[params.TIFF_TIMEOUT] == 20.0
        assert values[params.BIN_X] == 2
        assert values[params.FRAME_TYPE] == params.FrameType.NORMAL


class TestSignal:
    """Tests for the binary start/abort signals."""

    def test_post_before_wait_is_seen(self):
        sig = Signal()
        sig.post()
        assert sig.wait(0)

    def test_posts_coalesce(self):
        """Test that several posts before a wait count once."""
        sig = Signal()
        sig.post()
        sig.post()
        assert sig.wait(0)
        assert not sig.wait(0.01)

    def test_peek_does_not_consume(self):
        sig = Signal()
        sig.post()
        assert sig.peek(0)
        assert sig.is_set()
        sig.clear()
        assert not sig.peek(0.01)

    def test_wait_wakes_on_post(self):
        sig = Signal()
        threading.Timer(0.05, sig.post).start()
        start = time.monotonic()
        assert sig.wait(2.0)
        assert time.monotonic() - start < 1.0


class TestCreateFileName:
    """Tests for full file name construction."""

    def _registry(self, **values):
        registry = ParameterRegistry(params.default_parameters())
        registry.update(values)
        return registry

    def test_template(self):
        registry = self._registry(FilePath="/data", FileName="scan", FileNumber=7)
        assert create_file_name(registry) == "/data" + os.sep + "scan_007.tif"
        assert registry.get(params.FULL_FILE_NAME) == "/data" + os.sep + "scan_007.tif"

    def test_trailing_separator_kept(self):
        registry = self._registry(FilePath="/data" + os.sep, FileName="scan", FileNumber=1)
        assert create_file_name(registry) == "/data" + os.sep + "scan_001.tif"

    def test_auto_increment(self):
        """Test that the file number advances after each name."""
        registry = self._registry(FilePath="/d", FileName="a", FileNumber=1)
        first = create_file_name(registry)
        second = create_file_name(registry)
        assert first.endswith("a_001.tif")
        assert second.endswith("a_002.tif")
        assert registry.get(params.FILE_NUMBER) == 3

    def test_no_auto_increment(self):
        registry = self._registry(FilePath="/d", FileName="a", FileNumber=4, AutoIncrement=0)
        assert create_file_name(registry) == create_file_name(registry)
        assert registry.get(params.FILE_NUMBER) == 4

    def test_custom_template(self):
        registry = self._registry(FilePath="/d", FileName="a", FileNumber=12,
                                  FileTemplate="%s%s.%5.5d")
        assert create_file_name(registry) == "/d" + os.sep + "a.00012"
