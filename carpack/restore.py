from __future__ import annotations

import concurrent.futures as _fut
import os
import re
import shutil
import tempfile
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .carv1 import KIND_DIR, CarReader
from .config import RestoreConfig
from .constants import CAR_EXTENSION, DEFAULT_PARALLEL, PART_MARKER
from .errors import CarFormatError, MergeError, StorageIOError
from .logutil import get_logger
from .pathutil import join_under

_PART_RE = re.compile(r"^(?P<target>.+)" + re.escape(PART_MARKER) + r"(?P<offset>\d+)-(?P<size>\d+)$")

Extractor = Callable[[str, str, int], Any]
Merger = Callable[[str, int], Any]


class RestoreState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


def part_name(path: str, offset: int, file_size: int) -> str:
    return f"{path}{PART_MARKER}{offset}-{file_size}"


def _extract_one(car_path: str, output_dir: str) -> int:
    written = 0
    with CarReader(car_path) as reader:
        for ent in reader.iter_entries():
            try:
                target = join_under(output_dir, ent.path)
            except ValueError as exc:
                raise CarFormatError(f"{car_path}: unsafe entry {ent.path!r}") from exc
            if ent.kind == KIND_DIR:
                os.makedirs(target, exist_ok=True)
                continue
            if ent.is_part:
                target = part_name(target, ent.offset or 0, ent.file_size or 0)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as out:
                for chunk in reader.read_entry(ent):
                    out.write(chunk)
            written += 1
    return written


def extract_cars(input_dir: str, output_dir: str, parallel: int = DEFAULT_PARALLEL) -> int:
    """Unpack every ``*.car`` in ``input_dir`` into ``output_dir``.

    Pieces of split files are written next to their target as
    ``<path>.carpart-<offset>-<filesize>`` for :func:`merge_parts`.
    Returns the number of files and parts written.
    """
    try:
        cars = sorted(
            os.path.join(input_dir, n)
            for n in os.listdir(input_dir)
            if n.endswith(CAR_EXTENSION) and os.path.isfile(os.path.join(input_dir, n))
        )
    except OSError as exc:
        raise StorageIOError(f"Cannot list {input_dir}: {exc}") from exc

    def _runner(car_path: str) -> int:
        try:
            return _extract_one(car_path, output_dir)
        except OSError as exc:
            raise StorageIOError(f"Cannot extract {car_path}: {exc}") from exc

    with _fut.ThreadPoolExecutor(max_workers=max(1, int(parallel))) as ex:
        return sum(ex.map(_runner, cars))


def _find_parts(output_dir: str) -> Dict[str, List[Tuple[int, int, str]]]:
    groups: Dict[str, List[Tuple[int, int, str]]] = defaultdict(list)
    for root, _dirs, files in os.walk(output_dir):
        for f in files:
            m = _PART_RE.match(f)
            if m is None:
                continue
            target = os.path.join(root, m.group("target"))
            groups[target].append((int(m.group("offset")), int(m.group("size")), os.path.join(root, f)))
    return groups


def _merge_one(target: str, parts: List[Tuple[int, int, str]]) -> None:
    parts = sorted(parts)
    file_sizes = {p[1] for p in parts}
    if len(file_sizes) != 1:
        raise MergeError(f"{target}: parts disagree on the file size")
    file_size = file_sizes.pop()
    expected = 0
    for offset, _size, path in parts:
        if offset != expected:
            raise MergeError(f"{target}: expected a part at offset {expected}, found {offset}")
        expected += os.path.getsize(path)
    if expected != file_size:
        raise MergeError(f"{target}: parts cover {expected} of {file_size} bytes")

    fd, tmp = tempfile.mkstemp(prefix=".carpack-merge-", dir=os.path.dirname(target) or ".")
    try:
        with os.fdopen(fd, "wb") as out:
            for _offset, _size, path in parts:
                with open(path, "rb") as src:
                    shutil.copyfileobj(src, out)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    for _offset, _size, path in parts:
        os.remove(path)


def merge_parts(output_dir: str, parallel: int = DEFAULT_PARALLEL) -> int:
    """Join split file pieces under ``output_dir``; returns the number of files merged."""
    groups = _find_parts(output_dir)

    def _runner(item: Tuple[str, List[Tuple[int, int, str]]]) -> None:
        target, parts = item
        try:
            _merge_one(target, parts)
        except OSError as exc:
            raise StorageIOError(f"Cannot merge {target}: {exc}") from exc

    with _fut.ThreadPoolExecutor(max_workers=max(1, int(parallel))) as ex:
        list(ex.map(_runner, sorted(groups.items())))
    return len(groups)


class Restorer:
    """Sequential restore: validate, extract, merge.

    Intermediate part files are left in place when merging fails.
    """

    def __init__(
        self,
        config: RestoreConfig,
        *,
        extractor: Optional[Extractor] = None,
        merger: Optional[Merger] = None,
        logger: Any = None,
    ):
        self.config = config
        self.extractor = extractor or extract_cars
        self.merger = merger or merge_parts
        self.log = get_logger(logger, __name__)
        self.state = RestoreState.IDLE
        self.history: List[RestoreState] = [self.state]

    def _enter(self, state: RestoreState) -> None:
        self.state = state
        self.history.append(state)
        self.log.debug("restore_state", state=state.value)

    def run(self) -> None:
        cfg = self.config
        try:
            self._enter(RestoreState.VALIDATING)
            cfg.validate()
            try:
                os.makedirs(cfg.output_dir, exist_ok=True)
            except OSError as exc:
                raise StorageIOError(f"Cannot create output directory {cfg.output_dir}: {exc}") from exc

            self._enter(RestoreState.EXTRACTING)
            self.extractor(cfg.input_dir, cfg.output_dir, cfg.parallel)

            self._enter(RestoreState.MERGING)
            self.merger(cfg.output_dir, cfg.parallel)
        except Exception as exc:
            failed_in = self.state
            self._enter(RestoreState.FAILED)
            self.log.error("restore_failed", stage=failed_in.value, error=str(exc))
            raise
        self._enter(RestoreState.DONE)
        self.log.info("restore_done", input_dir=cfg.input_dir, output_dir=cfg.output_dir)


def restore(
    input_dir: str,
    output_dir: str,
    parallel: int = DEFAULT_PARALLEL,
    *,
    extractor: Optional[Extractor] = None,
    merger: Optional[Merger] = None,
    logger: Any = None,
) -> RestoreState:
    r = Restorer(RestoreConfig(input_dir, output_dir, parallel), extractor=extractor, merger=merger, logger=logger)
    r.run()
    return r.state
