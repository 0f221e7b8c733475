import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_GPU = 2

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Get the configuration directory, creating it if needed."""
    if len(sys.argv) > 1 and Path(sys.argv[1]).exists():
        # Allow overriding config directory for testing
        return Path(sys.argv[1])

    current_dir = Path.cwd()
    if (current_dir / "config.json").exists():
        return current_dir

    config_dir = Path.home() / ".config" / "gpu_voltage_control"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def select_devices(available: List[int], allowlist: List[int]) -> List[int]:
    """Managed GPUs in index order; an empty allowlist means all of them."""
    if not allowlist:
        return sorted(available)
    missing = sorted(set(allowlist) - set(available))
    if missing:
        logger.warning(f"Configured GPUs not found: {missing}")
    return sorted(set(allowlist) & set(available))


def create_telemetry(config: Dict[str, Any]):
    from .telemetry import POWER, TEMPERATURE, NvidiaSmiQuery, NvidiaSmiStream

    settings = config["telemetry"]
    fields = [TEMPERATURE, POWER]
    if settings["mode"] == "stream":
        stream = NvidiaSmiStream(config["nvidia_smi"], fields,
                                 interval=settings["interval"], history=settings["history"])
        stream.start()
        return stream
    return NvidiaSmiQuery(config["nvidia_smi"], fields, history=settings["history"],
                          timeout=config["tool_timeout"])


def main_cli():
    """Entry point for the voltage control daemon."""
    from .config import ConfigError, load_config, validate_config
    from .core import ConfigurationEmitter, VoltageController
    from .hardware import NvidiaInspector
    from .telemetry import NvidiaSmiStream, list_gpus

    config_dir = get_config_dir()
    try:
        config = load_config(config_dir / "config.json")
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(EXIT_ERROR)

    gpus = list_gpus(config["nvidia_smi"], timeout=config["tool_timeout"])
    devices = select_devices(list(gpus), config["devices"])
    if not devices:
        logger.error("No GPU available")
        sys.exit(EXIT_NO_GPU)
    for device in devices:
        logger.info(f"#{device}: {gpus[device]}")

    try:
        validate_config(config, len(devices))
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(EXIT_ERROR)

    telemetry = create_telemetry(config)
    emitter = ConfigurationEmitter(
        NvidiaInspector(config["nvidia_inspector"], timeout=config["tool_timeout"]),
        on_failure=config["on_emit_failure"],
    )
    controller = VoltageController(
        config, devices, telemetry, emitter,
        status_path=config_dir / ".gpu_voltage_control_status.json",
    )

    def _sigterm(signum, _frame):
        logger.info(f"Received signal {signum}, stopping")
        controller.stop()

    signal.signal(signal.SIGTERM, _sigterm)

    try:
        ok = controller.run()
    finally:
        if isinstance(telemetry, NvidiaSmiStream):
            telemetry.stop()
    sys.exit(EXIT_OK if ok else EXIT_ERROR)


if __name__ == "__main__":
    main_cli()
