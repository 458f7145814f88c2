from __future__ import annotations

"""
Raw manifest (manifest.csv) reading, writing and reconciliation.

Row layout
- payload_cid,filename,piece_cid,car_size,detail
- the detail column is unquoted JSON and contains commas; everything from
  the fifth field on is joined back with ',' before decoding
"""

import json
import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from .catalog import write_catalog
from .constants import (
    CAR_EXTENSION,
    CSV_FILE_NAME_CAR_UPLOAD,
    JSON_FILE_NAME_CAR_UPLOAD,
    MANIFEST_DETAIL_INDEX,
    MANIFEST_FILE_NAME,
    MANIFEST_HEADER,
    MANIFEST_MIN_FIELDS,
    MANIFEST_SEPARATOR,
)
from .descriptor import FileDescriptor
from .errors import (
    CarpackError,
    ChecksumError,
    ManifestFormatError,
    ManifestParseError,
    StorageIOError,
)
from .hashutil import md5sum
from .logutil import get_logger

_MANIFEST_LOCK = threading.Lock()


def _lenient_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _ci_get(obj: Dict[str, Any], *names: str) -> Any:
    lowered = {k.lower(): v for k, v in obj.items() if isinstance(k, str)}
    for n in names:
        if n.lower() in lowered:
            return lowered[n.lower()]
    return None


@dataclass
class ManifestLink:
    name: str
    hash: str = ""
    size: int = 0


@dataclass
class ManifestDetail:
    name: str = ""
    hash: str = ""
    size: int = 0
    links: List[ManifestLink] = field(default_factory=list)

    @classmethod
    def from_json(cls, fragment: str) -> "ManifestDetail":
        """Decode a detail column. Key names are matched case-insensitively."""
        try:
            obj = json.loads(fragment)
        except (json.JSONDecodeError, RecursionError) as exc:
            raise ManifestParseError(f"Invalid manifest detail: {exc}", fragment) from exc
        if not isinstance(obj, dict):
            raise ManifestParseError("Manifest detail is not a JSON object", fragment)
        raw_links = _ci_get(obj, "Link", "links") or []
        if not isinstance(raw_links, list):
            raise ManifestParseError("Manifest detail links are not a list", fragment)
        links = []
        for ln in raw_links:
            if not isinstance(ln, dict):
                raise ManifestParseError("Manifest detail link is not an object", fragment)
            links.append(
                ManifestLink(
                    name=str(_ci_get(ln, "Name") or ""),
                    hash=str(_ci_get(ln, "Hash") or ""),
                    size=_lenient_int(_ci_get(ln, "Size") or 0),
                )
            )
        return cls(
            name=str(_ci_get(obj, "Name") or ""),
            hash=str(_ci_get(obj, "Hash") or ""),
            size=_lenient_int(_ci_get(obj, "Size") or 0),
            links=links,
        )


@dataclass
class ManifestRow:
    payload_cid: str
    slice_name: str
    piece_cid: str
    car_size: int
    detail: str

    @classmethod
    def parse(cls, line: str) -> "ManifestRow":
        fields = line.split(MANIFEST_SEPARATOR)
        if len(fields) < MANIFEST_MIN_FIELDS:
            raise ManifestFormatError(
                f"Manifest row has {len(fields)} fields, expected at least {MANIFEST_MIN_FIELDS}: {line!r}"
            )
        return cls(
            payload_cid=fields[0],
            slice_name=fields[1],
            piece_cid=fields[2],
            car_size=_lenient_int(fields[3]),
            detail=MANIFEST_SEPARATOR.join(fields[MANIFEST_DETAIL_INDEX:]),
        )


def append_manifest_row(path: str, fields: Sequence[str]) -> None:
    """Append one row, writing the header first when the manifest is new."""
    line = MANIFEST_SEPARATOR.join(fields)
    if "\n" in line or "\r" in line:
        raise ManifestFormatError(f"Manifest row may not contain line breaks: {line!r}")
    with _MANIFEST_LOCK:
        try:
            new = not os.path.exists(path) or os.path.getsize(path) == 0
            with open(path, "a", encoding="utf-8", newline="") as fh:
                if new:
                    fh.write(MANIFEST_SEPARATOR.join(MANIFEST_HEADER) + "\n")
                fh.write(line + "\n")
        except OSError as exc:
            raise StorageIOError(f"Cannot append to {path}: {exc}") from exc


def read_manifest(path: str) -> List[str]:
    """Data lines of a manifest, header dropped."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as fh:
            content = fh.read()
    except OSError as exc:
        raise StorageIOError(f"Cannot read manifest {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise StorageIOError(f"Manifest {path} is not valid UTF-8: {exc}") from exc
    lines = [ln[:-1] if ln.endswith("\r") else ln for ln in content.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines[1:]


def _source_md5(path: str) -> str:
    if not os.path.isfile(path):
        return ""
    try:
        return md5sum(path)
    except OSError as exc:
        raise ChecksumError(f"Cannot checksum source {path}: {exc}") from exc


def _descriptor_for(
    row: ManifestRow,
    output_dir: str,
    folder_based: bool,
    generate_md5: bool,
    input_dir: str,
) -> FileDescriptor:
    detail = ManifestDetail.from_json(row.detail)
    if folder_based:
        source_name = os.path.basename(os.path.normpath(input_dir))
        source_path = input_dir
        source_size = sum(ln.size for ln in detail.links)
    else:
        if not detail.links:
            raise ManifestParseError(f"Manifest row for {row.payload_cid} has no links", row.detail)
        first = detail.links[0]
        source_name = first.name
        source_path = os.path.join(input_dir, first.name)
        source_size = first.size

    car_name = row.payload_cid + CAR_EXTENSION
    car_path = os.path.join(output_dir, car_name)
    car_md5 = source_md5 = ""
    if generate_md5:
        try:
            car_md5 = md5sum(car_path)
        except OSError as exc:
            raise ChecksumError(f"Cannot checksum archive {car_path}: {exc}") from exc
        source_md5 = _source_md5(source_path)

    return FileDescriptor(
        id=str(uuid.uuid4()),
        source_name=source_name,
        source_path=source_path,
        source_md5=source_md5,
        source_size=source_size,
        car_name=car_name,
        car_path=car_path,
        car_md5=car_md5,
        car_url=car_name,
        car_size=row.car_size,
        payload_cid=row.payload_cid,
        piece_cid=row.piece_cid,
    )


def reconcile(
    output_dir: str,
    folder_based: bool,
    generate_md5: bool,
    input_dir: str,
    *,
    json_name: str = JSON_FILE_NAME_CAR_UPLOAD,
    csv_name: str = CSV_FILE_NAME_CAR_UPLOAD,
    logger: Any = None,
) -> List[FileDescriptor]:
    """Turn the raw manifest in ``output_dir`` into descriptors and write both catalogs.

    Any bad row aborts the whole run before a catalog is written.
    """
    log = get_logger(logger, __name__)
    manifest_path = os.path.join(output_dir, MANIFEST_FILE_NAME)
    descriptors: List[FileDescriptor] = []
    try:
        for line in read_manifest(manifest_path):
            row = ManifestRow.parse(line)
            descriptors.append(_descriptor_for(row, output_dir, folder_based, generate_md5, input_dir))
        write_catalog(descriptors, output_dir, json_name, csv_name, logger=log)
    except ManifestParseError as exc:
        log.error("manifest_detail_invalid", manifest=manifest_path, error=str(exc), fragment=exc.fragment)
        raise
    except CarpackError as exc:
        log.error("reconcile_failed", manifest=manifest_path, error=str(exc))
        raise
    log.info("reconciled", manifest=manifest_path, descriptors=len(descriptors))
    return descriptors

