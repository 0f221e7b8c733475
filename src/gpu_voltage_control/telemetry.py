import abc
import logging
import re
import subprocess
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

TEMPERATURE = "temperature.gpu"
POWER = "power.draw"
NAME = "name"

NOT_AVAILABLE = ("N/A", "[N/A]", "[Not Supported]", "[Unknown Error]")

_SEPARATOR = re.compile(r",\s*")

# Anything that can go wrong running nvidia-smi and decoding its output
QUERY_ERRORS = (OSError, UnicodeDecodeError, subprocess.CalledProcessError, subprocess.TimeoutExpired)


def parse_value(field: str, raw: str) -> Any:
    """Convert one nvidia-smi value (queried with nounits) to its Python type."""
    raw = raw.strip()
    if raw in NOT_AVAILABLE:
        return None
    if field.startswith("temperature") or field.startswith("clocks"):
        return int(raw)
    if field.startswith("voltage"):
        return int(float(raw))
    if field.startswith("power"):
        return float(raw)
    return raw


def parse_line(line: str, fields: Sequence[str]) -> Tuple[int, Dict[str, Any]]:
    """Parse ``index, value[, value...]`` into the device index and its values.

    Raises ValueError when the field count does not match or a value does not
    parse.
    """
    parts = _SEPARATOR.split(line.strip())
    if len(parts) != len(fields) + 1:
        raise ValueError(f"expected {len(fields) + 1} fields, got {len(parts)}")
    index = int(parts[0])
    values = {field: parse_value(field, raw) for field, raw in zip(fields, parts[1:])}
    return index, values


def query_command(nvidia_smi: str, fields: Sequence[str]) -> List[str]:
    return [
        nvidia_smi,
        f"--query-gpu=index,{','.join(fields)}",
        "--format=csv,noheader,nounits",
    ]


def query_gpus(nvidia_smi: str, fields: Sequence[str],
               timeout: Optional[float] = None) -> Dict[int, Dict[str, Any]]:
    result = subprocess.run(
        query_command(nvidia_smi, fields),
        capture_output=True, text=True, check=True, timeout=timeout
    )
    readings = {}
    for line in result.stdout.splitlines():
        if not line.strip():
            continue
        try:
            index, values = parse_line(line, fields)
        except ValueError as e:
            logger.warning(f"Discarding malformed nvidia-smi line {line!r}: {e}")
            continue
        readings[index] = values
    return readings


def list_gpus(nvidia_smi: str, timeout: Optional[float] = None) -> Dict[int, str]:
    """Return the name of every GPU nvidia-smi reports, keyed by index."""
    try:
        readings = query_gpus(nvidia_smi, [NAME], timeout=timeout)
    except QUERY_ERRORS as e:
        logger.error(f"Failed to list GPUs: {e}")
        return {}
    return {index: values[NAME] for index, values in readings.items()}


class Telemetry(abc.ABC):
    """Rolling per-device history of nvidia-smi readings."""

    def __init__(self, fields: Sequence[str], history: int = 60):
        self.fields = list(fields)
        self.history = history
        self.available = True
        self._samples: Dict[int, Deque[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    @abc.abstractmethod
    def poll(self):
        pass

    def record(self, index: int, values: Dict[str, Any]):
        with self._lock:
            samples = self._samples.get(index)
            if samples is None:
                samples = self._samples[index] = deque(maxlen=self.history)
            samples.append(values)

    def latest(self, index: int, field: str) -> Optional[Any]:
        with self._lock:
            if not self.available:
                return None
            samples = self._samples.get(index)
            if not samples:
                return None
            return samples[-1].get(field)

    def average(self, index: int, field: str, window: int) -> Optional[float]:
        with self._lock:
            if not self.available:
                return None
            samples = list(self._samples.get(index, ()))
        values = [s[field] for s in samples if s.get(field) is not None][-window:]
        if not values:
            return None
        return float(np.mean(values))

    def snapshot(self, field: str) -> List[Optional[Any]]:
        """Latest value of a field for every device, indexed by device id."""
        with self._lock:
            indexes = list(self._samples)
        if not indexes:
            return []
        result: List[Optional[Any]] = [None] * (max(indexes) + 1)
        for index in indexes:
            result[index] = self.latest(index, field)
        return result


class NvidiaSmiQuery(Telemetry):
    """One blocking nvidia-smi query per poll."""

    def __init__(self, nvidia_smi: str, fields: Sequence[str], history: int = 1,
                 timeout: Optional[float] = None):
        super().__init__(fields, history)
        self.nvidia_smi = nvidia_smi
        self.timeout = timeout

    def poll(self):
        try:
            readings = query_gpus(self.nvidia_smi, self.fields, timeout=self.timeout)
        except QUERY_ERRORS as e:
            logger.error(f"Failed to query GPU telemetry: {e}")
            self.available = False
            return

        with self._lock:
            for index in list(self._samples):
                if index not in readings:
                    del self._samples[index]
            self.available = True
        for index, values in readings.items():
            self.record(index, values)


class NvidiaSmiStream(Telemetry):
    """nvidia-smi running in loop mode, consumed by a background thread."""

    def __init__(self, nvidia_smi: str, fields: Sequence[str], interval: float = 1.0,
                 history: int = 60):
        super().__init__(fields, history)
        self.nvidia_smi = nvidia_smi
        self.interval = interval
        self.process: Optional[subprocess.Popen] = None
        self.thread: Optional[threading.Thread] = None

    def start(self):
        command = query_command(self.nvidia_smi, self.fields)
        command.append(f"--loop-ms={int(self.interval * 1000)}")
        self.process = subprocess.Popen(
            command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, bufsize=1
        )
        self.thread = threading.Thread(target=self._read, args=(self.process,), daemon=True)
        self.thread.start()
        logger.info(f"Started telemetry stream: {' '.join(command)}")

    def stop(self):
        if self.process:
            _terminate(self.process)
        if self.thread:
            self.thread.join(timeout=5)

    def poll(self):
        # Readings arrive asynchronously.
        pass

    def ingest(self, line: str):
        if not line.strip():
            return
        try:
            index, values = parse_line(line, self.fields)
        except ValueError as e:
            logger.warning(f"Discarding malformed telemetry line {line.rstrip()!r}: {e}")
            return
        self.record(index, values)

    def _read(self, process: subprocess.Popen):
        try:
            for line in process.stdout:
                self.ingest(line)
        except (OSError, ValueError) as e:
            logger.error(f"Telemetry stream failed: {e}", exc_info=True)
        finally:
            returncode = _terminate(process)
            with self._lock:
                self.available = False
        logger.warning(f"Telemetry stream exited with code {returncode}, readings unavailable")


def _terminate(process: subprocess.Popen) -> Optional[int]:
    if process.poll() is None:
        process.terminate()
        try:
            return process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
    return process.wait()
