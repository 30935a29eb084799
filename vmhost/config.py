"""Application configuration using Pydantic Settings."""

from pathlib import Path
from typing import Dict, List, Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    PROJECT_NAME: str = "vmhost"
    VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # CORS Configuration
    BACKEND_CORS_ORIGINS: List[str] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, list):
            return v
        elif isinstance(v, str):
            import json

            return json.loads(v)
        raise ValueError(v)

    # Runtime directory (per-VM logs, monitor sockets, default images)
    VM_BASE_DIR: Path = Path("/var/lib/vmhost/vms")

    # Database Configuration (defaults to SQLite inside VM_BASE_DIR)
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    # Storage
    STORAGE_LOCATIONS: Dict[str, str] = {}
    DEFAULT_STORAGE_LOCATION: str = "local"
    STORAGE_BACKEND: str = "qemu-img"  # qemu-img or sparse
    QEMU_IMG_BINARY: str = "qemu-img"
    STORAGE_MIN_FREE_MB: int = 64
    STORAGE_STRICT_CAPACITY: bool = False

    # Hypervisor
    HYPERVISOR_BINARY: str = "qemu-system-x86_64"
    KVM_DEVICE: str = "/dev/kvm"

    # Console ports
    CONSOLE_PORT_START: int = 5910
    CONSOLE_PORT_END: int = 5999
    CONSOLE_DISPLAY_BASE: int = 5900
    WEBSOCKET_PORT_BASE: int = 6080
    CONSOLE_LISTEN_HOST: str = "0.0.0.0"
    CONSOLE_PROBE_HOST: bool = True

    # Lifecycle timing (seconds)
    READINESS_TIMEOUT: float = 10.0
    SHUTDOWN_GRACE_PERIOD: float = 30.0
    KILL_TIMEOUT: float = 5.0
    SPAWN_SETTLE_TIME: float = 0.5
    LIVENESS_POLL_INTERVAL: float = 0.5
    MONITOR_INTERVAL: float = 5.0

    # Mesh network
    MESH_INTERFACE: str = "wolfnet0"
    MESH_NETWORK_CIDR: str = "10.10.10.0/24"
    MESH_GATEWAY: str = "10.10.10.1"
    MESH_POOL_NAME: str = "mesh"
    MESH_ALLOCATOR_URL: Optional[str] = None
    MESH_USE_TAP: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or console

    # OpenTelemetry Configuration
    OTEL_SERVICE_NAME: str = "vmhost"
    OTEL_TRACE_SAMPLE_RATE: float = 1.0  # 1.0 = 100% sampling
    OTEL_EXPORT_CONSOLE: bool = False

    @model_validator(mode="after")
    def check_port_range(self) -> "Settings":
        """Validate the console port range."""
        if self.CONSOLE_PORT_START > self.CONSOLE_PORT_END:
            raise ValueError("CONSOLE_PORT_START must not exceed CONSOLE_PORT_END")
        if self.CONSOLE_PORT_START < self.CONSOLE_DISPLAY_BASE:
            raise ValueError("CONSOLE_PORT_START must not be below CONSOLE_DISPLAY_BASE")
        return self

    @property
    def database_url(self) -> str:
        """Database URL, falling back to a SQLite file in VM_BASE_DIR."""
        return self.DATABASE_URL or f"sqlite:///{self.VM_BASE_DIR / 'vmhost.db'}"

    @property
    def storage_locations(self) -> Dict[str, Path]:
        """Configured storage locations, always including the default one."""
        locations = {name: Path(path) for name, path in self.STORAGE_LOCATIONS.items()}
        locations.setdefault(self.DEFAULT_STORAGE_LOCATION, self.VM_BASE_DIR / "images")
        return locations

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
