from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .constants import (
    CSV_FILE_NAME_CAR_UPLOAD,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PARALLEL,
    JSON_FILE_NAME_CAR_UPLOAD,
)
from .errors import ConfigurationError

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmgt]i?b?|b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "b": 1, "k": 1 << 10, "m": 1 << 20, "g": 1 << 30, "t": 1 << 40}


def parse_size(text: str) -> int:
    """Parse ``1048576``, ``512KiB``, ``32M`` or ``1GiB`` into bytes (binary units)."""
    m = _SIZE_RE.match(text)
    if not m:
        raise ConfigurationError(f"Invalid size: {text!r}")
    unit = (m.group(2) or "").lower()[:1]
    return int(m.group(1)) * _SIZE_UNITS[unit]


def default_output_dir(parent: str = ".") -> str:
    """A fresh ``<timestamp>_<uuid4>`` directory name below ``parent``."""
    stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return os.path.join(parent, f"{stamp}_{uuid.uuid4()}")


def _check_parallel(parallel: int) -> None:
    if parallel < 1:
        raise ConfigurationError(f"parallel must be at least 1, got {parallel}")


@dataclass
class PackConfig:
    input_dir: str
    output_dir: str
    size_limit: int
    folder_based: bool = False
    parallel: int = DEFAULT_PARALLEL
    generate_md5: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    json_name: str = JSON_FILE_NAME_CAR_UPLOAD
    csv_name: str = CSV_FILE_NAME_CAR_UPLOAD

    def validate(self) -> None:
        if self.size_limit <= 0:
            raise ConfigurationError("CAR file size limit is too small")
        _check_parallel(self.parallel)
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk size must be positive")
        if not self.input_dir:
            raise ConfigurationError("input directory is required")
        if not self.output_dir:
            raise ConfigurationError("output directory is required")


@dataclass
class RestoreConfig:
    input_dir: str
    output_dir: str
    parallel: int = DEFAULT_PARALLEL

    def validate(self) -> None:
        _check_parallel(self.parallel)
        if not self.input_dir:
            raise ConfigurationError("input directory is required")
        if not self.output_dir:
            raise ConfigurationError("output directory is required")


def resolve_output_dir(output_dir: Optional[str]) -> str:
    return output_dir if output_dir else default_output_dir()
