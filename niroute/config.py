"""
Core configuration management
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Router tunnel settings"""

    model_config = SettingsConfigDict(env_prefix="NIROUTE_", env_file=".env", extra="ignore")

    # Route protocol
    default_router_port: int = 3299
    route_protocol_version: int = 38
    allow_multi_hop: bool = False  # Dial only the first hop of chained route strings

    # Timeouts (milliseconds)
    connect_timeout_ms: int = 30000
    handshake_grace_ms: int = 2000
    response_timeout_ms: int = 30000

    # Stream handling
    read_chunk_size: int = 64 * 1024
    max_response_bytes: int = 64 * 1024 * 1024
    decode_chunked: bool = True

    # TLS to the destination
    tls_verify: bool = True
    tls_ca_file: Optional[Path] = None

    # Logging
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"
    log_level: str = "INFO"


settings = Settings()
