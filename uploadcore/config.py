"""Engine configuration"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional, Tuple
import logging

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB

# Environment variable -> config field
ENV_OVERRIDES = {
    'UPLOAD_DIR': 'upload_dir',
    'CHUNK_SIZE': 'chunk_size',
    'MAX_FILE_SIZE': 'max_file_size',
    'REDIS_URL': 'redis_url',
}


@dataclass
class UploadConfig:
    """Upload engine configuration"""
    upload_dir: Path = Path("uploads")
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    redis_url: Optional[str] = None
    key_prefix: str = ""
    thumbnail_size: Tuple[int, int] = (200, 200)

    def __post_init__(self):
        self.upload_dir = Path(self.upload_dir)
        self.chunk_size = int(self.chunk_size)
        self.max_file_size = int(self.max_file_size)
        self.thumbnail_size = tuple(int(v) for v in self.thumbnail_size)
        self.validate()

    def validate(self):
        """Reject nonsensical sizes"""
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_file_size <= 0:
            raise ValueError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.chunk_size > self.max_file_size:
            raise ValueError("chunk_size cannot exceed max_file_size")
        if len(self.thumbnail_size) != 2 or min(self.thumbnail_size) <= 0:
            raise ValueError(f"Invalid thumbnail_size: {self.thumbnail_size}")


def load_config(path: Optional[Path] = None,
                env: Optional[Mapping[str, str]] = None) -> UploadConfig:
    """
    Build configuration from an optional YAML file, then environment overrides
    """
    if env is None:
        env = os.environ

    values = {}
    if path is not None:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(UploadConfig)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        values.update(data)
        logger.debug(f"Loaded config file {path}")

    for var, field_name in ENV_OVERRIDES.items():
        if env.get(var):
            values[field_name] = env[var]

    return UploadConfig(**values)
