"""Transfer configuration and logging setup"""

import logging
import sys
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024  # 64KB
DEFAULT_CHECKSUM_BLOCK_SIZE = 1024 * 1024  # 1MB

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class TransferConfig:
    """Transfer configuration"""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    checksum_block_size: int = DEFAULT_CHECKSUM_BLOCK_SIZE
    allow_fallback_matching: bool = False  # legacy orphan-chunk matching
    download_dir: Optional[str] = None
    log_level: str = "INFO"

    def validate(self) -> "TransferConfig":
        """Check value ranges, returns self"""
        if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int) \
                or self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be a positive integer, got {self.chunk_size!r}")
        if isinstance(self.checksum_block_size, bool) \
                or not isinstance(self.checksum_block_size, int) \
                or self.checksum_block_size <= 0:
            raise ConfigError(
                f"checksum_block_size must be a positive integer, got {self.checksum_block_size!r}"
            )
        if not isinstance(self.allow_fallback_matching, bool):
            raise ConfigError("allow_fallback_matching must be a boolean")
        # getLevelName maps known names to their numeric level
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigError(f"Unknown log level: {self.log_level}")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "TransferConfig":
        """Build config from a mapping, rejecting unknown keys"""
        if not isinstance(data, dict):
            raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        return cls(**data).validate()

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: Union[str, Path]) -> TransferConfig:
    """
    Load configuration from a YAML file

    Accepts either a flat mapping or one nested under a `transfer:` key.
    A missing or empty file yields the defaults.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No config file at {path}, using defaults")
        return TransferConfig()

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return TransferConfig()
    if isinstance(data, dict) and 'transfer' in data:
        data = data['transfer'] or {}

    config = TransferConfig.from_dict(data)
    logger.info(f"Loaded config from {path}")
    return config


def configure_logging(level: str = "INFO", log_file: Optional[Union[str, Path]] = None):
    """Install stdout (and optional file) handlers on the root logger"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(str(log_file)))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
