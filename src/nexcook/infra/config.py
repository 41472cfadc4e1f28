from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class NetworkConfig:
    host: str = "0.0.0.0"
    api_port: int = 3001


@dataclass
class SerialConfig:
    # Any pyserial URL works here, e.g. "loop://" or "socket://host:port"
    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    timeout: float = 0.2
    write_timeout: float = 1.0
    terminator: str = ";"
    encoding: str = "utf-8"
    # Longest unterminated tail kept while waiting for ";"
    max_pending: int = 4096
    reconnect_interval_s: float = 2.0


@dataclass
class GatewayConfig:
    buffer_size: int = 20
    poll_failure_limit: int = 2


@dataclass
class PollingConfig:
    connected_interval_s: float = 2.0
    disconnected_interval_s: float = 10.0


@dataclass
class CookingConfig:
    # Simulated seconds = recipe minutes * 60 / time_divisor
    time_divisor: float = 180.0
    tick_s: float = 0.1
    advance_delay_s: float = 2.0


@dataclass
class CatalogConfig:
    path: Optional[str] = None
    state_path: Optional[str] = None
    debounce_s: float = 0.3


@dataclass
class LoggingConfig:
    level: str = "INFO"
    buffer_size: int = 100


@dataclass
class DeviceConfig:
    device_id: str = "nexcook-1"
    network: NetworkConfig = field(default_factory=NetworkConfig)
    serial: SerialConfig = field(default_factory=SerialConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    cooking: CookingConfig = field(default_factory=CookingConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _load_yaml(path: str) -> Dict[str, Any]:
    raw = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(raw) if raw else {}
    return data or {}


def _section(cls, raw: Optional[Dict[str, Any]]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_config(path: Optional[str]) -> DeviceConfig:
    """
    Read YAML config into a typed DeviceConfig with sensible defaults.
    A missing file yields defaults; unknown keys are ignored.
    """
    if not path or not Path(path).exists():
        return DeviceConfig()

    data = _load_yaml(path)

    return DeviceConfig(
        device_id=data.get("device_id", "nexcook-1"),
        network=_section(NetworkConfig, data.get("network")),
        serial=_section(SerialConfig, data.get("serial")),
        gateway=_section(GatewayConfig, data.get("gateway")),
        polling=_section(PollingConfig, data.get("polling")),
        cooking=_section(CookingConfig, data.get("cooking")),
        catalog=_section(CatalogConfig, data.get("catalog")),
        logging=_section(LoggingConfig, data.get("logging")),
    )
