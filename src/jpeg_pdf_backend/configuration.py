from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "HOST": "server.host",
    "PORT": "server.port",
    "APP_ENV": "server.environment",
    "LOG_LEVEL": "server.log_level",
    "MAX_FILE_SIZE": "limits.max_file_size",
    "MAX_FILES": "limits.max_files",
    "COMPRESSION_WORKERS": "pipeline.compression_workers",
}


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "info"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class LimitsConfig:
    max_file_size: int = 10 * MIB
    max_files: int = 20
    max_field_size: int = 1 * MIB
    allowed_mime_prefix: str = "image/"
    field_name: str = "images"


@dataclass
class PipelineConfig:
    compression_workers: int = 2


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


def find_config_path() -> Optional[Path]:
    explicit = os.environ.get("JPEG_PDF_CONFIG")
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at {path}")
        return path
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


def _env_dotlist() -> List[str]:
    return [f"{key}={os.environ[name]}" for name, key in ENV_OVERRIDES.items() if os.environ.get(name)]


def _base_config() -> DictConfig:
    base = OmegaConf.structured(AppConfig)
    config_path = find_config_path()
    if config_path is not None:
        logger.debug(f"Loading config from {config_path}")
        base = OmegaConf.merge(base, OmegaConf.load(config_path))
    return base


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the effective configuration.

    Layers, lowest precedence first: structured defaults, the optional YAML
    file, environment variables, then ``overrides``. Unknown keys are
    rejected and values are coerced to the declared types.
    """
    merged = OmegaConf.merge(
        _base_config(),
        OmegaConf.from_dotlist(_env_dotlist()),
        OmegaConf.create(overrides or {}),
    )
    config = DictConfig(merged)
    OmegaConf.set_struct(config, True)
    _validate(config)
    return config


def _validate(config: DictConfig) -> None:
    if config.limits.max_file_size <= 0:
        raise ValueError("limits.max_file_size must be positive")
    if config.limits.max_files <= 0:
        raise ValueError("limits.max_files must be positive")
    if config.pipeline.compression_workers <= 0:
        raise ValueError("pipeline.compression_workers must be positive")


@lru_cache(maxsize=1)
def get_config() -> DictConfig:
    return make_runtime_config()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
