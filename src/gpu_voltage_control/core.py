import atexit
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from . import hardware
from .config import resolve
from .hardware import Command, ExternalToolError, NvidiaInspector, ToolResult
from .telemetry import POWER, TEMPERATURE, Telemetry

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def quantize(microvolts: float, step: int) -> int:
    """Round a voltage to the nearest multiple of the voltage step."""
    return step * round_half_up(microvolts / step)


class DeviceState:
    def __init__(self, setpoint: Optional[float] = None):
        # Last clamped, unquantized output of the control law.
        self.setpoint = setpoint

    def __repr__(self):
        return f"DeviceState(setpoint={self.setpoint!r})"


class ConfigurationEmitter:
    """Serializes nvidiaInspector invocations and applies the failure policy."""

    def __init__(self, tool: NvidiaInspector, on_failure: str = "exit"):
        self.tool = tool
        self.on_failure = on_failure
        self._lock = threading.Lock()

    def emit(self, commands: Sequence[Command]) -> Optional[ToolResult]:
        if not commands:
            return None

        with self._lock:
            result = self.tool.apply(commands)

        if not result.ok:
            error = ExternalToolError(self.tool.command_line(commands), result)
            if self.on_failure == "exit":
                raise error
            logger.error(f"{error}, continuing")
        return result


class VoltageController:
    def __init__(self, config: Dict[str, Any], devices: Sequence[int], telemetry: Telemetry,
                 emitter: ConfigurationEmitter, status_path: Optional[Path] = None):
        self.config = config
        self.devices = sorted(devices)
        self.telemetry = telemetry
        self.emitter = emitter
        self.status_path = status_path
        self.states: Dict[int, DeviceState] = {device: DeviceState() for device in self.devices}
        self.rebooting = False
        self.clock_offsets_applied = False
        self._failure: Optional[Exception] = None
        self._stop = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self.status = {
            "pid": os.getpid(),
            "status": "starting",
            "temperatures": {},
            "voltages": {},
        }

    def _cleanup_status(self):
        if self.status_path is not None and self.status_path.exists():
            self.status_path.unlink()

    def _write_status(self):
        if self.status_path is None:
            return
        with open(self.status_path, "w") as f:
            json.dump(self.status, f, indent=2)

    def _param(self, key: str, logical_index: int):
        return resolve(self.config[key], logical_index)

    def quantize(self, microvolts: float) -> int:
        return quantize(microvolts, self.config["voltage_step"])

    def check_safety(self) -> List[int]:
        """Return the devices at or above their maximum temperature."""
        over_limit = []
        for i, device in enumerate(self.devices):
            temp = self.telemetry.latest(device, TEMPERATURE)
            if temp is None:
                continue
            max_temp = self._param("max_temperature", i)
            if temp >= max_temp:
                logger.warning(f"#{device}: temperature {temp} reached the maximum of {max_temp}")
                over_limit.append(device)
        return over_limit

    def update_device(self, logical_index: int, device: int) -> Optional[Command]:
        state = self.states[device]

        if state.setpoint is None:
            state.setpoint = self.quantize(self._param("start_voltage", logical_index))
            logger.info(f"#{device}: start voltage {state.setpoint} uV")
            self.status["voltages"][device] = state.setpoint
            return hardware.lock_voltage_point(device, state.setpoint)

        temp = self.telemetry.latest(device, TEMPERATURE)
        self.status["temperatures"][device] = temp
        if temp is None:
            logger.debug(f"#{device}: no temperature reading, skipping")
            return None

        step = self.config["voltage_step"]
        previous = state.setpoint
        dT = self._param("target_temperature", logical_index) - temp
        dV = round_half_up(dT * self.config["kp"] * step)
        new_voltage = min(max(previous + dV, self._param("min_voltage", logical_index)),
                          self._param("max_voltage", logical_index))
        state.setpoint = new_voltage

        window = self.config["telemetry"]["average_window"]
        avg_temp = self.telemetry.average(device, TEMPERATURE, window)
        avg_text = f", Tavg = {avg_temp:.1f}" if avg_temp is not None else ""
        power = self.telemetry.latest(device, POWER)
        power_text = f", P = {power:.1f} W" if power is not None else ""
        logger.info(
            f"#{device}: T = {temp}{avg_text}{power_text}, Vcurr = {previous} uV, "
            f"dT = {dT:>2}, dV = {dV:>5}, Vnew = {new_voltage} uV"
        )

        quantized = self.quantize(new_voltage)
        self.status["voltages"][device] = quantized
        if quantized == self.quantize(previous):
            return None
        return hardware.lock_voltage_point(device, quantized)

    def tick(self) -> List[Command]:
        """Run one control cycle and return the commands sent to nvidiaInspector."""
        if self._failure is not None:
            failure, self._failure = self._failure, None
            raise failure

        if self.rebooting:
            return []

        self.telemetry.poll()

        if self.check_safety():
            self.rebooting = True
            self.status["status"] = "rebooting"
            self._write_status()
            command = self.config["reboot_command"]
            result = hardware.reboot(command, timeout=self.config.get("tool_timeout"))
            if not result.ok:
                raise ExternalToolError(list(command), result)
            return []

        commands = []
        for i, device in enumerate(self.devices):
            command = self.update_device(i, device)
            if command is not None:
                commands.append(command)

        self.emitter.emit(commands)
        self._write_status()
        return commands

    def apply_clock_offsets(self) -> List[Command]:
        if self.rebooting:
            logger.info("Reboot pending, not applying clock offsets")
            return []

        base = []
        memory = []
        for i, device in enumerate(self.devices):
            offset = self._param("base_clock_offset", i)
            if offset:
                base.append(hardware.base_clock_offset(device, offset))
            offset = self._param("memory_clock_offset", i)
            if offset:
                memory.append(hardware.memory_clock_offset(device, offset))

        commands = base + memory
        self.emitter.emit(commands)
        self.clock_offsets_applied = True
        return commands

    def _apply_clock_offsets_from_timer(self):
        try:
            self.apply_clock_offsets()
        except ExternalToolError as e:
            logger.error(f"Failed to apply clock offsets: {e}")
            self._failure = e

    def start_clock_offset_timer(self):
        delay = self.config["clock_offset_delay"]
        self._timer = threading.Timer(delay, self._apply_clock_offsets_from_timer)
        self._timer.daemon = True
        self._timer.start()
        logger.info(f"Clock offsets will be applied in {delay:.0f}s")

    def stop(self):
        self._stop.set()

    def run(self) -> bool:
        """Control voltages until stopped. Returns False if stopped by an error."""
        self.status["status"] = "running"
        if self.status_path is not None:
            atexit.register(self._cleanup_status)
        self._write_status()
        self.start_clock_offset_timer()

        try:
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(self.config["update_interval"])
        except KeyboardInterrupt:
            logger.info("Voltage controller stopped by user")
        except Exception as e:
            logger.error(f"Unhandled exception: {e}", exc_info=True)
            self.status["status"] = "error"
            self.status["error_message"] = str(e)
            self._write_status()
            return False
        finally:
            if self._timer is not None:
                self._timer.cancel()
            logger.info("Stopping voltage controller.")

        self._cleanup_status()
        return True
