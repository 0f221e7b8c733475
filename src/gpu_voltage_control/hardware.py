import logging
import subprocess
from typing import List, NamedTuple, Optional, Sequence

logger = logging.getLogger(__name__)

LOCK_VOLTAGE_POINT = "lockVoltagePoint"
SET_BASE_CLOCK_OFFSET = "setBaseClockOffset"
SET_MEMORY_CLOCK_OFFSET = "setMemoryClockOffset"


class Command(NamedTuple):
    """One device-scoped nvidiaInspector argument."""
    name: str
    device: int
    value: int
    pstate: Optional[int] = None

    def to_arg(self) -> str:
        if self.pstate is None:
            return f"-{self.name}:{self.device},{self.value}"
        return f"-{self.name}:{self.device},{self.pstate},{self.value}"


class ToolResult(NamedTuple):
    returncode: Optional[int]
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ExternalToolError(Exception):
    def __init__(self, command: List[str], result: ToolResult):
        self.command = command
        self.result = result
        super().__init__(
            f"{command[0]} failed with exit code {result.returncode}: {result.stderr.strip()}"
        )


def lock_voltage_point(device: int, microvolts: int) -> Command:
    return Command(LOCK_VOLTAGE_POINT, device, int(microvolts))


def base_clock_offset(device: int, offset: int, pstate: int = 0) -> Command:
    return Command(SET_BASE_CLOCK_OFFSET, device, int(offset), pstate)


def memory_clock_offset(device: int, offset: int, pstate: int = 0) -> Command:
    return Command(SET_MEMORY_CLOCK_OFFSET, device, int(offset), pstate)


class NvidiaInspector:
    def __init__(self, path: str = "nvidiaInspector", timeout: Optional[float] = None):
        self.path = path
        self.timeout = timeout

    def command_line(self, commands: Sequence[Command]) -> List[str]:
        return [self.path] + [c.to_arg() for c in commands]

    def apply(self, commands: Sequence[Command]) -> Optional[ToolResult]:
        """Run nvidiaInspector once with every command; None if there is nothing to do."""
        if not commands:
            return None

        command = self.command_line(commands)
        logger.info(" ".join(command))
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, UnicodeDecodeError) as e:
            return ToolResult(None, str(e))
        except subprocess.TimeoutExpired:
            return ToolResult(None, f"timed out after {self.timeout}s")
        return ToolResult(result.returncode, result.stderr or "")


def reboot(command: Sequence[str], timeout: Optional[float] = None) -> ToolResult:
    logger.critical(f"Rebooting system: {' '.join(command)}")
    try:
        result = subprocess.run(list(command), capture_output=True, text=True, timeout=timeout)
    except (OSError, UnicodeDecodeError, subprocess.TimeoutExpired) as e:
        logger.error(f"Reboot command failed: {e}")
        return ToolResult(None, str(e))
    if result.returncode != 0:
        logger.error(f"Reboot command exited with code {result.returncode}: {result.stderr.strip()}")
    return ToolResult(result.returncode, result.stderr or "")
