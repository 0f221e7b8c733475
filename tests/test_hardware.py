"""Tests for the hardware.py module."""
import subprocess
import unittest
from unittest.mock import MagicMock, patch

from gpu_voltage_control.hardware import (
    Command, ExternalToolError, NvidiaInspector, ToolResult,
    base_clock_offset, lock_voltage_point, memory_clock_offset, reboot
)


class TestCommand(unittest.TestCase):
    def test_to_arg(self):
        """Commands render as nvidiaInspector flags."""
        self.assertEqual(lock_voltage_point(1, 843750.0).to_arg(), "-lockVoltagePoint:1,843750")
        self.assertEqual(base_clock_offset(0, 160).to_arg(), "-setBaseClockOffset:0,0,160")
        self.assertEqual(memory_clock_offset(2, -50).to_arg(), "-setMemoryClockOffset:2,0,-50")

    def test_external_tool_error_message(self):
        """The error names the tool, exit code and stderr."""
        error = ExternalToolError(["nvidiaInspector", "-x"], ToolResult(2, "bad arg\n"))
        self.assertEqual(str(error), "nvidiaInspector failed with exit code 2: bad arg")


class TestNvidiaInspector(unittest.TestCase):
    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply(self, mock_run):
        """All commands are passed in one invocation."""
        mock_run.return_value = MagicMock(returncode=0, stderr="")

        tool = NvidiaInspector("nvidiaInspector.exe", timeout=10)
        result = tool.apply([
            Command("lockVoltagePoint", 0, 843750),
            Command("lockVoltagePoint", 1, 850000),
        ])

        self.assertTrue(result.ok)
        args = mock_run.call_args[0][0]
        self.assertEqual(args, [
            "nvidiaInspector.exe", "-lockVoltagePoint:0,843750", "-lockVoltagePoint:1,850000"
        ])
        self.assertEqual(mock_run.call_args[1]["timeout"], 10)

    @patch("gpu_voltage_control.hardware.logger")
    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply_empty(self, mock_run, mock_logger):
        """An empty batch neither runs nor logs anything."""
        self.assertIsNone(NvidiaInspector().apply([]))
        mock_run.assert_not_called()
        mock_logger.info.assert_not_called()

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply_nonzero_exit(self, mock_run):
        """A nonzero exit is reported, not raised."""
        mock_run.return_value = MagicMock(returncode=1, stderr="invalid voltage")
        result = NvidiaInspector().apply([Command("lockVoltagePoint", 0, 1)])
        self.assertFalse(result.ok)
        self.assertEqual(result, ToolResult(1, "invalid voltage"))

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply_missing_tool(self, mock_run):
        """A missing executable is a failed result."""
        mock_run.side_effect = FileNotFoundError("nvidiaInspector")
        result = NvidiaInspector().apply([Command("lockVoltagePoint", 0, 1)])
        self.assertFalse(result.ok)
        self.assertIsNone(result.returncode)

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply_not_permitted(self, mock_run):
        """An executable that cannot be run is a failed result."""
        mock_run.side_effect = PermissionError("nvidiaInspector")
        result = NvidiaInspector().apply([Command("lockVoltagePoint", 0, 1)])
        self.assertFalse(result.ok)
        self.assertIsNone(result.returncode)
        self.assertIn("nvidiaInspector", result.stderr)

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_apply_timeout(self, mock_run):
        """A hung tool is a failed result."""
        mock_run.side_effect = subprocess.TimeoutExpired("nvidiaInspector", 5)
        result = NvidiaInspector(timeout=5).apply([Command("lockVoltagePoint", 0, 1)])
        self.assertFalse(result.ok)
        self.assertIn("timed out", result.stderr)


class TestReboot(unittest.TestCase):
    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_reboot(self, mock_run):
        """The configured reboot command is run once."""
        mock_run.return_value = MagicMock(returncode=0, stderr="")
        with self.assertLogs("gpu_voltage_control.hardware", level="CRITICAL"):
            result = reboot(["shutdown", "-r", "now"])
        self.assertTrue(result.ok)
        self.assertEqual(mock_run.call_args[0][0], ["shutdown", "-r", "now"])

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_reboot_failure_logged(self, mock_run):
        """A failing reboot command is logged."""
        mock_run.return_value = MagicMock(returncode=1, stderr="not permitted")
        with self.assertLogs("gpu_voltage_control.hardware", level="ERROR") as logs:
            result = reboot(["shutdown", "-r", "now"])
        self.assertFalse(result.ok)
        self.assertTrue(any("not permitted" in line for line in logs.output))

    @patch("gpu_voltage_control.hardware.subprocess.run")
    def test_reboot_not_permitted(self, mock_run):
        """A reboot command that cannot be run is a failed result."""
        mock_run.side_effect = PermissionError("shutdown")
        with self.assertLogs("gpu_voltage_control.hardware", level="ERROR"):
            result = reboot(["shutdown", "-r", "now"])
        self.assertFalse(result.ok)
        self.assertIsNone(result.returncode)


if __name__ == "__main__":
    unittest.main()
