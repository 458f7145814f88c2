from __future__ import annotations

import concurrent.futures as _fut
import json
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .carv1 import CarWriter, link_to
from .cid import CID
from .commp import piece_commitment_of_file
from .constants import CAR_EXTENSION, DEFAULT_CHUNK_SIZE, MANIFEST_FILE_NAME
from .errors import SliceError
from .logutil import get_logger
from .manifest import append_manifest_row
from .pathutil import manifest_safe, norm_path


@dataclass
class FilePiece:
    arc_path: str
    fs_path: str
    offset: int
    length: int
    file_size: int

    @property
    def is_split(self) -> bool:
        return self.length != self.file_size


@dataclass
class SliceResult:
    payload_cid: str
    slice_name: str
    car_path: str
    car_size: int
    detail: Dict[str, Any]


SliceCallback = Callable[[SliceResult], None]
# (size_limit, source_root, targets, output_dir, graph_name, parallel, callback)
Slicer = Callable[[int, str, Sequence[str], str, str, int, Optional[SliceCallback]], Any]

_Tree = Dict[str, Union["_Tree", FilePiece]]


def collect_files(source_root: str, targets: Sequence[str]) -> List[Tuple[str, str, int]]:
    """List (entry path, filesystem path, size) for every file under ``targets``.

    Entry paths are relative to the parent of ``source_root`` so the first
    path segment names the source unit itself. Directories are walked in
    sorted order; symlinked directories are not followed.
    """
    base = os.path.dirname(os.path.normpath(os.path.abspath(source_root)))
    files: List[Tuple[str, str, int]] = []

    def _add(full: str) -> None:
        rel = os.path.relpath(full, start=base).replace(os.sep, "/")
        try:
            arc = norm_path(rel)
        except ValueError as exc:
            raise SliceError(f"{full} is outside of {source_root}") from exc
        try:
            size = os.path.getsize(full)
        except OSError as exc:
            raise SliceError(f"Cannot stat {full}: {exc}") from exc
        files.append((arc, full, size))

    for t in targets:
        target = os.path.normpath(os.path.abspath(t))
        if os.path.isfile(target):
            _add(target)
        elif os.path.isdir(target):
            for root, dirnames, filenames in os.walk(target):
                dirnames[:] = sorted(d for d in dirnames if not os.path.islink(os.path.join(root, d)))
                for f in sorted(filenames):
                    _add(os.path.join(root, f))
        else:
            raise SliceError(f"Source not found: {t}")
    return files


def plan_graphs(size_limit: int, files: Sequence[Tuple[str, str, int]]) -> List[List[FilePiece]]:
    """Pack file bytes into graphs holding at most ``size_limit`` bytes each.

    A file that does not fit in the room left in the current graph is split:
    the first piece fills the graph, the rest continues in the next one.
    """
    if size_limit <= 0:
        raise SliceError("size limit must be positive")
    graphs: List[List[FilePiece]] = []
    current: List[FilePiece] = []
    used = 0
    for arc, full, size in files:
        if size == 0:
            current.append(FilePiece(arc, full, 0, 0, 0))
            continue
        offset = 0
        while offset < size:
            take = min(size_limit - used, size - offset)
            current.append(FilePiece(arc, full, offset, take, size))
            offset += take
            used += take
            if used >= size_limit:
                graphs.append(current)
                current = []
                used = 0
    if current:
        graphs.append(current)
    return graphs


def _build_tree(pieces: Sequence[FilePiece]) -> _Tree:
    tree: _Tree = {}
    for piece in pieces:
        parts = piece.arc_path.split("/")
        node = tree
        for part in parts[:-1]:
            nxt = node.setdefault(part, {})
            if isinstance(nxt, FilePiece):
                raise SliceError(f"{piece.arc_path}: parent is a file")
            node = nxt
        node[parts[-1]] = piece
    return tree


def _emit_file(writer: CarWriter, piece: FilePiece, chunk_size: int) -> CID:
    chunks = []
    remaining = piece.length
    with open(piece.fs_path, "rb") as rf:
        rf.seek(piece.offset)
        while remaining > 0:
            raw = rf.read(min(chunk_size, remaining))
            if not raw:
                raise SliceError(f"{piece.fs_path} shrank while slicing")
            chunks.append(link_to(writer.put_raw(raw)))
            remaining -= len(raw)
    node: Dict[str, Any] = {"Chunks": chunks, "Size": piece.length}
    if piece.is_split:
        node["Offset"] = piece.offset
        node["FileSize"] = piece.file_size
    return writer.put_node(node)


def _emit_dir(writer: CarWriter, tree: _Tree, chunk_size: int) -> Tuple[CID, int, List[Dict[str, Any]]]:
    links: List[Dict[str, Any]] = []
    details: List[Dict[str, Any]] = []
    total = 0
    for name, child in tree.items():
        if isinstance(child, FilePiece):
            cid = _emit_file(writer, child, chunk_size)
            size = child.length
            details.append({"Name": name, "Hash": str(cid), "Size": size})
        else:
            cid, size, sub = _emit_dir(writer, child, chunk_size)
            details.append({"Name": name, "Hash": str(cid), "Size": size, "Link": sub})
        links.append({"Hash": link_to(cid), "Name": name, "Size": size})
        total += size
    return writer.put_node({"Link": links}), total, details


def write_graph(
    pieces: Sequence[FilePiece],
    output_dir: str,
    graph_name: str,
    index: int,
    total: int,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> SliceResult:
    """Write one graph as ``<payload_cid>.car`` in ``output_dir``."""
    fd, tmp_path = tempfile.mkstemp(prefix=".carpack-", suffix=".car.tmp", dir=output_dir)
    os.close(fd)
    try:
        with CarWriter(tmp_path) as writer:
            root, size, details = _emit_dir(writer, _build_tree(pieces), chunk_size)
            writer.finalize(root)
            car_size = writer.size
        car_path = os.path.join(output_dir, str(root) + CAR_EXTENSION)
        os.replace(tmp_path, car_path)
    except OSError as exc:
        _remove_quietly(tmp_path)
        raise SliceError(f"Failed to write slice {index + 1}/{total} of {graph_name}: {exc}") from exc
    except BaseException:
        _remove_quietly(tmp_path)
        raise
    return SliceResult(
        payload_cid=str(root),
        slice_name=f"{manifest_safe(graph_name)}-total-{total}-part-{index + 1}",
        car_path=car_path,
        car_size=car_size,
        detail={"Name": graph_name, "Hash": str(root), "Size": size, "Link": details},
    )


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def slice_sources(
    size_limit: int,
    source_root: str,
    targets: Sequence[str],
    output_dir: str,
    graph_name: str,
    parallel: int,
    callback: Optional[SliceCallback] = None,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    logger: Any = None,
) -> List[SliceResult]:
    """Split ``targets`` into size-bounded CAR slices written to ``output_dir``.

    Slices are built on a pool of ``parallel`` threads; ``callback`` then
    runs once per slice, in slice order, on the calling thread.
    """
    log = get_logger(logger, __name__)
    if size_limit <= 0:
        raise SliceError("size limit must be positive")
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as exc:
        raise SliceError(f"Cannot create output directory {output_dir}: {exc}") from exc

    files = collect_files(source_root, targets)
    graphs = plan_graphs(size_limit, files)
    total = len(graphs)
    log.info("slicing", graph=graph_name, files=len(files), slices=total)

    def _runner(item: Tuple[int, List[FilePiece]]) -> SliceResult:
        index, pieces = item
        return write_graph(pieces, output_dir, graph_name, index, total, chunk_size)

    with _fut.ThreadPoolExecutor(max_workers=max(1, int(parallel))) as ex:
        results = list(ex.map(_runner, enumerate(graphs)))

    for r in results:
        log.info("car_file_created", graph=graph_name, car=r.car_path, payload_cid=r.payload_cid, size=r.car_size)
        if callback is not None:
            callback(r)
    return results


def commp_callback(output_dir: str, *, logger: Any = None) -> SliceCallback:
    """Callback that computes each slice's piece CID and records it in the raw manifest."""
    log = get_logger(logger, __name__)
    manifest_path = os.path.join(output_dir, MANIFEST_FILE_NAME)

    def _callback(result: SliceResult) -> None:
        try:
            piece_cid, piece_size = piece_commitment_of_file(result.car_path)
        except OSError as exc:
            raise SliceError(f"Cannot compute piece commitment of {result.car_path}: {exc}") from exc
        append_manifest_row(
            manifest_path,
            [
                result.payload_cid,
                result.slice_name,
                str(piece_cid),
                str(result.car_size),
                json.dumps(result.detail),
            ],
        )
        log.debug("piece_commitment", payload_cid=result.payload_cid, piece_cid=str(piece_cid), piece_size=piece_size)

    return _callback
