from __future__ import annotations

import hashlib
import io
import tempfile
import unittest
from pathlib import Path

from carpack.carv1 import KIND_DIR, KIND_FILE, CarReader, CarWriter, link_to
from carpack.cid import CID, cid_for, varint_decode, varint_encode
from carpack.commp import fr32_expand, padded_piece_size, piece_commitment, piece_commitment_of_file, zero_nodes
from carpack.constants import CODEC_DAG_JSON, CODEC_RAW
from carpack.errors import BlockNotFoundError, CarFormatError


def _write_sample_car(path: Path):
    with CarWriter(str(path)) as w:
        leaf1 = w.put_raw(b"hello world\n" * 10)
        leaf2 = w.put_raw(b"tail")
        f = w.put_node({"Chunks": [link_to(leaf1), link_to(leaf2)], "Size": 124})
        part = w.put_node({"Chunks": [link_to(leaf2)], "Size": 4, "Offset": 96, "FileSize": 100})
        sub = w.put_node({"Link": [{"Hash": link_to(part), "Name": "big.bin", "Size": 4}]})
        root = w.put_node(
            {
                "Link": [
                    {"Hash": link_to(f), "Name": "a.txt", "Size": 124},
                    {"Hash": link_to(sub), "Name": "sub", "Size": 4},
                ]
            }
        )
        w.finalize(root)
    return root, w.size


class CidTests(unittest.TestCase):
    def test_varint_roundtrip_boundaries(self):
        for n in (0, 1, 127, 128, 300, 0xF101, 1 << 40):
            enc = varint_encode(n)
            self.assertEqual(varint_decode(enc), (n, len(enc)))
        self.assertEqual(varint_encode(0xF101), b"\x81\xe2\x03")

    def test_text_prefixes(self):
        self.assertTrue(str(cid_for(b"x", CODEC_RAW)).startswith("bafkrei"))
        self.assertTrue(str(cid_for(b"{}", CODEC_DAG_JSON)).startswith("baguqeera"))
        piece, _ = piece_commitment(io.BytesIO(b""), 0)
        self.assertTrue(str(piece).startswith("baga6ea4sea"))

    def test_parse_is_inverse_of_str(self):
        c = cid_for(b"payload", CODEC_DAG_JSON)
        self.assertEqual(CID.parse(str(c)), c)
        with self.assertRaises(ValueError):
            CID.parse("z" + str(c)[1:])


class CarTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_write_and_walk(self):
        def scenario(tmp_path: Path):
            car = tmp_path / "sample.car"
            root, size = _write_sample_car(car)
            self.assertEqual(size, car.stat().st_size)
            with CarReader(str(car)) as r:
                self.assertEqual(r.root, root)
                entries = r.list()
                by_path = {e.path: e for e in entries}
                self.assertEqual([e.path for e in entries], ["a.txt", "sub", "sub/big.bin"])
                self.assertEqual(by_path["a.txt"].kind, KIND_FILE)
                self.assertEqual(by_path["sub"].kind, KIND_DIR)
                self.assertEqual(b"".join(r.read_entry(by_path["a.txt"])), b"hello world\n" * 10 + b"tail")
                part = by_path["sub/big.bin"]
                self.assertTrue(part.is_part)
                self.assertEqual((part.offset, part.file_size), (96, 100))
                self.assertFalse(by_path["a.txt"].is_part)
                self.assertEqual(len(r.order), 6)
                self.assertTrue(r.verify())

        self.run_with_tmpdir(scenario)

    def test_verify_detects_corruption(self):
        def scenario(tmp_path: Path):
            car = tmp_path / "sample.car"
            _write_sample_car(car)
            leaf = cid_for(b"tail", CODEC_RAW)
            with CarReader(str(car)) as r:
                ref = r.blocks[leaf.to_bytes()]
            with open(car, "rb+") as fh:
                fh.seek(ref.offset)
                b = fh.read(1)
                fh.seek(ref.offset)
                fh.write(bytes([b[0] ^ 0x55]))
            with CarReader(str(car)) as r:
                self.assertFalse(r.verify())

        self.run_with_tmpdir(scenario)

    def test_missing_block_and_truncation(self):
        def scenario(tmp_path: Path):
            car = tmp_path / "sample.car"
            _write_sample_car(car)
            with CarReader(str(car)) as r:
                with self.assertRaises(BlockNotFoundError):
                    r.get(cid_for(b"absent", CODEC_RAW))
            data = car.read_bytes()
            car.write_bytes(data[:-3])
            with self.assertRaises(CarFormatError):
                CarReader(str(car)).open()

        self.run_with_tmpdir(scenario)


class PieceCommitmentTests(unittest.TestCase):
    def test_padded_piece_size(self):
        self.assertEqual(padded_piece_size(0), 128)
        self.assertEqual(padded_piece_size(127), 128)
        self.assertEqual(padded_piece_size(128), 256)
        self.assertEqual(padded_piece_size(254), 256)
        self.assertEqual(padded_piece_size(255), 512)
        self.assertEqual(padded_piece_size(1 << 20), 2 << 20)

    def test_fr32_all_ones(self):
        out = fr32_expand(b"\xff" * 127)
        self.assertEqual(len(out), 128)
        for i in range(0, 128, 32):
            node = out[i : i + 32]
            self.assertEqual(node[:31], b"\xff" * 31)
            self.assertEqual(node[31], 0x3F)

    def test_zero_input_matches_zero_subtree(self):
        zeros = zero_nodes(3)
        cid, size = piece_commitment(io.BytesIO(b"\x00" * 127), 127)
        self.assertEqual(size, 128)
        self.assertEqual(cid.digest, zeros[2])
        cid, size = piece_commitment(io.BytesIO(b"\x00" * 200), 200)
        self.assertEqual(size, 256)
        self.assertEqual(cid.digest, zeros[3])

    def test_short_tail_is_zero_padded(self):
        data = bytes(range(200))
        padded = data + b"\x00" * 54
        a, _ = piece_commitment(io.BytesIO(data), len(data))
        b, _ = piece_commitment(io.BytesIO(padded), len(padded))
        self.assertEqual(a, b)
        c, _ = piece_commitment(io.BytesIO(data[:-1] + b"\x01"), len(data))
        self.assertNotEqual(a, c)

    def test_file_and_stream_agree(self):
        with tempfile.TemporaryDirectory() as tmp:
            p = Path(tmp) / "blob"
            data = hashlib.sha256(b"seed").digest() * 300
            p.write_bytes(data)
            self.assertEqual(piece_commitment_of_file(str(p)), piece_commitment(io.BytesIO(data), len(data)))


if __name__ == "__main__":
    unittest.main()
