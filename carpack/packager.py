from __future__ import annotations

import os
from typing import Any, List, Optional

from .config import PackConfig
from .constants import CSV_FILE_NAME_CAR_UPLOAD, DEFAULT_PARALLEL, JSON_FILE_NAME_CAR_UPLOAD
from .descriptor import FileDescriptor
from .errors import CarpackError, StorageIOError
from .logutil import get_logger
from .manifest import reconcile
from .slicer import Slicer, commp_callback, slice_sources


class Packager:
    """Slice a source directory into CAR files and build the catalogs.

    In folder-based mode the whole input directory is one source unit;
    otherwise every immediate entry of it is sliced on its own. All slicer
    calls share the output directory and its manifest.
    """

    def __init__(self, config: PackConfig, *, slicer: Optional[Slicer] = None, logger: Any = None):
        self.config = config
        self.log = get_logger(logger, __name__)
        if slicer is None:
            chunk_size = config.chunk_size
            log = self.log

            def slicer(size_limit, source_root, targets, output_dir, graph_name, parallel, callback):
                return slice_sources(
                    size_limit, source_root, targets, output_dir, graph_name, parallel, callback,
                    chunk_size=chunk_size, logger=log,
                )
        self.slicer = slicer

    def _entries(self, input_dir: str, output_dir: str) -> List[str]:
        """Sorted entries of ``input_dir``, leaving out ``output_dir`` if it lives there."""
        try:
            names = sorted(os.listdir(input_dir))
        except OSError as exc:
            raise StorageIOError(f"Cannot list input directory {input_dir}: {exc}") from exc
        kept = []
        for name in names:
            path = os.path.join(input_dir, name)
            if os.path.isdir(path) and os.path.samefile(path, output_dir):
                self.log.info("skipping_output_dir", source=path)
                continue
            kept.append(name)
        return kept

    def run(self) -> List[FileDescriptor]:
        cfg = self.config
        try:
            cfg.validate()
        except CarpackError as exc:
            self.log.error("invalid_configuration", error=str(exc))
            raise
        try:
            os.makedirs(cfg.output_dir, exist_ok=True)
        except OSError as exc:
            self.log.error("output_dir_create_failed", output_dir=cfg.output_dir, error=str(exc))
            raise StorageIOError(f"Cannot create output directory {cfg.output_dir}: {exc}") from exc

        callback = commp_callback(cfg.output_dir, logger=self.log)
        try:
            if cfg.folder_based:
                name = os.path.basename(os.path.normpath(cfg.input_dir))
                self.log.info("slicing_source", source=cfg.input_dir, graph=name)
                self.slicer(cfg.size_limit, cfg.input_dir, [cfg.input_dir], cfg.output_dir, name, cfg.parallel, callback)
            else:
                for name in self._entries(cfg.input_dir, cfg.output_dir):
                    path = os.path.join(cfg.input_dir, name)
                    self.log.info("slicing_source", source=path, graph=name)
                    self.slicer(cfg.size_limit, path, [path], cfg.output_dir, name, cfg.parallel, callback)
        except Exception as exc:
            self.log.error("slicing_failed", input_dir=cfg.input_dir, error=str(exc))
            raise

        return reconcile(
            cfg.output_dir,
            cfg.folder_based,
            cfg.generate_md5,
            cfg.input_dir,
            json_name=cfg.json_name,
            csv_name=cfg.csv_name,
            logger=self.log,
        )


def package(
    input_dir: str,
    output_dir: str,
    size_limit: int,
    *,
    folder_based: bool = False,
    parallel: int = DEFAULT_PARALLEL,
    generate_md5: bool = False,
    json_name: str = JSON_FILE_NAME_CAR_UPLOAD,
    csv_name: str = CSV_FILE_NAME_CAR_UPLOAD,
    slicer: Optional[Slicer] = None,
    logger: Any = None,
) -> List[FileDescriptor]:
    cfg = PackConfig(
        input_dir=input_dir,
        output_dir=output_dir,
        size_limit=size_limit,
        folder_based=folder_based,
        parallel=parallel,
        generate_md5=generate_md5,
        json_name=json_name,
        csv_name=csv_name,
    )
    return Packager(cfg, slicer=slicer, logger=logger).run()
