from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path

from structlog.testing import capture_logs

from carpack.carv1 import CarReader
from carpack.config import PackConfig, parse_size
from carpack.errors import ConfigurationError, SliceError, StorageIOError
from carpack.manifest import ManifestDetail, ManifestRow, read_manifest
from carpack.packager import Packager, package
from carpack.restore import restore
from carpack.slicer import plan_graphs, slice_sources


def _fill(path: Path, size: int, seed: int = 0):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes((i * 31 + seed) % 251 for i in range(size)))


def _tree_bytes(root: Path):
    out = {}
    for dirpath, _dirs, files in os.walk(root):
        for f in files:
            p = Path(dirpath) / f
            out[p.relative_to(root).as_posix()] = p.read_bytes()
    return out


class SlicerTests(unittest.TestCase):
    def test_plan_splits_across_graphs(self):
        files = [("d/a", "/x/a", 5), ("d/b", "/x/b", 0), ("d/c", "/x/c", 2)]
        graphs = plan_graphs(3, files)
        self.assertEqual(
            [[(p.arc_path, p.offset, p.length) for p in g] for g in graphs],
            [[("d/a", 0, 3)], [("d/a", 3, 2), ("d/b", 0, 0), ("d/c", 0, 1)], [("d/c", 1, 1)]],
        )
        self.assertTrue(graphs[0][0].is_split)
        self.assertFalse(graphs[1][1].is_split)

    def test_slice_names_and_callback_order(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "we,ird"
            _fill(root / "f.bin", 10)
            seen = []
            results = slice_sources(4, str(root), [str(root)], str(Path(tmp) / "out"), "we,ird", 3, seen.append)
            self.assertEqual(seen, results)
            self.assertEqual([r.slice_name for r in results], [f"we_ird-total-3-part-{i}" for i in (1, 2, 3)])
            for r in results:
                self.assertEqual(os.path.basename(r.car_path), r.payload_cid + ".car")
                with CarReader(r.car_path) as reader:
                    self.assertEqual(str(reader.root), r.payload_cid)
                    self.assertTrue(reader.verify())
            self.assertEqual([r.detail["Size"] for r in results], [4, 4, 2])
            self.assertEqual(results[0].detail["Link"][0]["Name"], "we,ird")

    def test_missing_source(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SliceError):
                slice_sources(10, os.path.join(tmp, "nope"), [os.path.join(tmp, "nope")], tmp, "nope", 1)


class PackTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_per_entry_packaging(self):
        def scenario(tmp_path: Path):
            src, out = tmp_path / "input", tmp_path / "out"
            _fill(src / "a", 100)
            _fill(src / "b" / "inner.txt", 40, seed=3)
            _fill(src / "b" / "deeper" / "x.bin", 60, seed=5)
            ds = package(str(src), str(out), 1 << 20, parallel=2, generate_md5=True)

            lines = (out / "manifest.csv").read_text(encoding="utf-8").splitlines()
            self.assertEqual(lines[0], "payload_cid,filename,piece_cid,car_size,detail")
            self.assertEqual(len(lines), 3)
            rows = [ManifestRow.parse(ln) for ln in read_manifest(str(out / "manifest.csv"))]
            self.assertEqual([r.slice_name for r in rows], ["a-total-1-part-1", "b-total-1-part-1"])
            self.assertTrue(all(r.piece_cid.startswith("baga6ea4sea") for r in rows))
            self.assertEqual(ManifestDetail.from_json(rows[1].detail).links[0].size, 100)

            self.assertEqual([d.source_name for d in ds], ["a", "b"])
            self.assertEqual([d.source_size for d in ds], [100, 100])
            for d in ds:
                self.assertEqual(d.car_name, d.payload_cid + ".car")
                self.assertEqual(d.car_size, os.path.getsize(d.car_path))
                self.assertTrue(d.car_md5)
            self.assertTrue(ds[0].source_md5)
            self.assertEqual(ds[1].source_md5, "")

            catalog = json.loads((out / "car.json").read_text(encoding="utf-8"))
            self.assertEqual([c["sourceName"] for c in catalog], ["a", "b"])
            self.assertEqual(len((out / "car.csv").read_text().splitlines()), 3)

        self.run_with_tmpdir(scenario)

    def test_folder_based_packaging(self):
        def scenario(tmp_path: Path):
            src, out = tmp_path / "data", tmp_path / "out"
            _fill(src / "f1", 100)
            _fill(src / "f2", 200, seed=9)
            (d,) = package(str(src), str(out), 1 << 20, folder_based=True)
            self.assertEqual(d.source_name, "data")
            self.assertEqual(d.source_path, str(src))
            self.assertEqual(d.source_size, 300)
            with CarReader(d.car_path) as r:
                self.assertEqual([e.path for e in r.list()], ["data", "data/f1", "data/f2"])

        self.run_with_tmpdir(scenario)

    def test_invalid_size_limit_has_no_side_effects(self):
        def scenario(tmp_path: Path):
            src, out = tmp_path / "src", tmp_path / "out"
            _fill(src / "a", 10)
            for limit in (0, -5):
                with self.assertRaises(ConfigurationError):
                    package(str(src), str(out), limit)
            self.assertFalse(out.exists())
            with self.assertRaises(ConfigurationError):
                package(str(src), str(out), 10, parallel=0)

        self.run_with_tmpdir(scenario)

    def test_slicer_failure_aborts(self):
        def scenario(tmp_path: Path):
            src, out = tmp_path / "src", tmp_path / "out"
            _fill(src / "a", 10)
            _fill(src / "b", 10)
            calls = []

            def failing(size_limit, source_root, targets, output_dir, graph_name, parallel, callback):
                calls.append(graph_name)
                raise SliceError("disk full")

            with capture_logs() as logs:
                with self.assertRaises(SliceError):
                    Packager(PackConfig(str(src), str(out), 1024), slicer=failing).run()
            self.assertEqual(calls, ["a"])
            self.assertIn("slicing_failed", [e["event"] for e in logs])
            self.assertFalse((out / "car.json").exists())
            self.assertFalse((out / "car.csv").exists())

        self.run_with_tmpdir(scenario)

    def test_output_dir_inside_input_is_not_sliced(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            _fill(src / "a", 10)
            with capture_logs() as logs:
                ds = package(str(src), str(src / "out"), 1 << 20)
            self.assertEqual([d.source_name for d in ds], ["a"])
            self.assertIn("skipping_output_dir", [e["event"] for e in logs])
            rows = read_manifest(str(src / "out" / "manifest.csv"))
            self.assertEqual([ManifestRow.parse(ln).slice_name for ln in rows], ["a-total-1-part-1"])

        self.run_with_tmpdir(scenario)

    def test_empty_input_fails(self):
        def scenario(tmp_path: Path):
            src, out = tmp_path / "src", tmp_path / "out"
            src.mkdir()
            with self.assertRaises(StorageIOError):
                package(str(src), str(out), 1024)

        self.run_with_tmpdir(scenario)

    def test_pack_then_restore_with_split_files(self):
        def scenario(tmp_path: Path):
            src, out, restored = tmp_path / "src", tmp_path / "out", tmp_path / "restored"
            _fill(src / "big.bin", 5000)
            _fill(src / "small.txt", 300, seed=1)
            _fill(src / "sub" / "c.txt", 900, seed=2)
            (src / "sub" / "empty").write_bytes(b"")
            ds = package(str(src), str(out), 2048, folder_based=True, parallel=3)
            self.assertGreater(len(ds), 2)
            self.assertEqual(sum(d.source_size for d in ds), 5000 + 300 + 900)

            restore(str(out), str(restored), 2)
            self.assertEqual(_tree_bytes(restored / "src"), _tree_bytes(src))
            leftovers = [p for p in restored.rglob("*") if ".carpart-" in p.name]
            self.assertEqual(leftovers, [])

        self.run_with_tmpdir(scenario)


class ConfigTests(unittest.TestCase):
    def test_parse_size(self):
        self.assertEqual(parse_size("1048576"), 1048576)
        self.assertEqual(parse_size("512KiB"), 512 * 1024)
        self.assertEqual(parse_size("32M"), 32 << 20)
        self.assertEqual(parse_size("1gib"), 1 << 30)
        with self.assertRaises(ConfigurationError):
            parse_size("lots")


if __name__ == "__main__":
    unittest.main()
