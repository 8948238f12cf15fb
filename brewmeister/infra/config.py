from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/brewmeister.yaml"


@dataclass
class SerialConfig:
    port: str = "/dev/ttyACM0"
    baudrate: int = 115200
    timeout: float = 1.0


@dataclass
class DeviceConfig:
    use_mock: bool = False
    queue_size: int = 32


@dataclass
class MockConfig:
    initial_temperature: float = 20.0
    approach_rate: float = 0.5
    latency: float = 0.0


@dataclass
class ProgramConfig:
    poll_interval: float = 5.0
    tolerance: float = 0.5
    queue_size: int = 32
    # 0 disables the ceiling
    max_missing_readings: int = 0
    max_read_errors: int = 0
    read_error_backoff: float = 1.0


@dataclass
class DatabaseConfig:
    path: str = "brewmeister.db"


@dataclass
class NetworkConfig:
    host: str = "0.0.0.0"
    api_port: int = 3000
    cors_origins: List[str] = field(default_factory=lambda: ["http://0.0.0.0:8080"])


@dataclass
class ApiConfig:
    read_retries: int = 1


@dataclass
class AppConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    mock: MockConfig = field(default_factory=MockConfig)
    program: ProgramConfig = field(default_factory=ProgramConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path) as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping of config sections, got {type(data).__name__}")
    return data


def _section(cls, raw: Optional[Dict[str, Any]]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_config(path: Optional[str]) -> AppConfig:
    """
    Build the AppConfig from a YAML file.

    Without a file every section keeps its dataclass defaults. Each section
    is filled independently, so a file may set only the keys it cares about;
    keys a section does not define are dropped.
    """
    if not path or not Path(path).exists():
        return AppConfig()

    data = _load_yaml(path)

    return AppConfig(
        serial=_section(SerialConfig, data.get("serial")),
        device=_section(DeviceConfig, data.get("device")),
        mock=_section(MockConfig, data.get("mock")),
        program=_section(ProgramConfig, data.get("program")),
        database=_section(DatabaseConfig, data.get("database")),
        network=_section(NetworkConfig, data.get("network")),
        api=_section(ApiConfig, data.get("api")),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )
