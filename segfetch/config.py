import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    resource_root: str = "."
    backlog: int = 5
    concurrent: bool = False

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    output_dir: str = "."
    output_prefix: str = "received_"

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)


@dataclass
class TransferConfig:
    chunk_size: int = 512
    max_request_size: int = 4096
    io_timeout_sec: Optional[float] = None


@dataclass
class SegfetchConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)

    def validate(self) -> "SegfetchConfig":
        """Raise ValueError on settings the protocol cannot honour."""
        if self.transfer.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.transfer.chunk_size}")
        if self.transfer.max_request_size < 1:
            raise ValueError(
                f"max_request_size must be positive, got {self.transfer.max_request_size}"
            )
        if self.transfer.io_timeout_sec is not None and self.transfer.io_timeout_sec <= 0:
            raise ValueError("io_timeout_sec must be positive when set")
        for name, port in (("server", self.server.port), ("client", self.client.port)):
            if not 0 <= port <= 65535:
                raise ValueError(f"{name} port out of range: {port}")
        return self


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"config section '{name}' must be a mapping")
    return section


def load_config(config_path: Optional[str] = None) -> SegfetchConfig:
    """Load configuration from file or use defaults."""
    if config_path and os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        config = SegfetchConfig(
            server=ServerConfig(**_section(config_data, 'server')),
            client=ClientConfig(**_section(config_data, 'client')),
            transfer=TransferConfig(**_section(config_data, 'transfer')),
        )
    else:
        config = SegfetchConfig()

    return config.validate()
