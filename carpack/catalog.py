from __future__ import annotations

import csv
import json
import os
import tempfile
from typing import Any, List, Sequence

from .constants import CSV_HEADERS
from .descriptor import FileDescriptor
from .errors import StorageIOError
from .logutil import get_logger


def _stage(output_dir: str, name: str) -> str:
    fd, tmp = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=output_dir)
    os.close(fd)
    return tmp


def write_json_catalog(descriptors: Sequence[FileDescriptor], path: str) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        json.dump([d.to_dict() for d in descriptors], fh, indent=1, ensure_ascii=False)


def write_csv_catalog(descriptors: Sequence[FileDescriptor], path: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh, lineterminator="\n")
        w.writerow(CSV_HEADERS)
        for d in descriptors:
            w.writerow(d.csv_row())


def write_catalog(
    descriptors: Sequence[FileDescriptor],
    output_dir: str,
    json_name: str,
    csv_name: str,
    *,
    logger: Any = None,
) -> str:
    """Write the JSON and CSV catalogs and return the JSON path.

    Both are written to temporary files first; neither is moved into place
    unless both writes succeeded.
    """
    log = get_logger(logger, __name__)
    json_path = os.path.join(output_dir, json_name)
    csv_path = os.path.join(output_dir, csv_name)
    staged: List[str] = []
    try:
        os.makedirs(output_dir, exist_ok=True)
        json_tmp = _stage(output_dir, json_name)
        staged.append(json_tmp)
        csv_tmp = _stage(output_dir, csv_name)
        staged.append(csv_tmp)
        write_json_catalog(descriptors, json_tmp)
        write_csv_catalog(descriptors, csv_tmp)
        os.replace(json_tmp, json_path)
        staged[0] = json_path
        os.replace(csv_tmp, csv_path)
        staged.clear()
    except OSError as exc:
        for tmp in staged:
            try:
                os.remove(tmp)
            except OSError:
                pass
        log.error("catalog_write_failed", output_dir=output_dir, error=str(exc))
        raise StorageIOError(f"Cannot write catalogs in {output_dir}: {exc}") from exc
    log.info("metadata_file_generated", path=json_path)
    log.info("metadata_file_generated", path=csv_path)
    return json_path


def read_catalog(path: str) -> List[FileDescriptor]:
    """Load descriptors back from a JSON catalog."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise StorageIOError(f"Cannot read catalog {path}: {exc}") from exc
    return [FileDescriptor.from_dict(d) for d in data]
