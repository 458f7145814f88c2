from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .carv1 import KIND_FILE, CarReader
from .config import parse_size, resolve_output_dir
from .constants import CSV_FILE_NAME_CAR_UPLOAD, DEFAULT_LOG_LEVEL, DEFAULT_PARALLEL, JSON_FILE_NAME_CAR_UPLOAD
from .errors import CarpackError
from .logutil import configure_logging
from .manifest import reconcile
from .packager import package
from .restore import restore


def cmd_pack(
    input_dir: str,
    *,
    output_dir: Optional[str] = None,
    size_limit: str,
    folder_based: bool = False,
    parallel: int = DEFAULT_PARALLEL,
    generate_md5: bool = False,
    json_name: str = JSON_FILE_NAME_CAR_UPLOAD,
    csv_name: str = CSV_FILE_NAME_CAR_UPLOAD,
) -> bool:
    out = resolve_output_dir(output_dir)
    descriptors = package(
        input_dir,
        out,
        parse_size(size_limit),
        folder_based=folder_based,
        parallel=parallel,
        generate_md5=generate_md5,
        json_name=json_name,
        csv_name=csv_name,
    )
    for d in descriptors:
        print(f"{d.car_name}\t{d.piece_cid}\t{d.car_size}\t{d.source_name}")
    print(f"{len(descriptors)} CAR file(s) in {out}")
    return True


def cmd_reconcile(output_dir: str, *, input_dir: str, folder_based: bool = False, generate_md5: bool = False) -> bool:
    """Rebuild car.json / car.csv from an existing manifest.csv."""
    descriptors = reconcile(output_dir, folder_based, generate_md5, input_dir)
    print(f"{len(descriptors)} descriptor(s) written to {output_dir}")
    return True


def cmd_restore(input_dir: str, *, output_dir: str, parallel: int = DEFAULT_PARALLEL) -> bool:
    restore(input_dir, output_dir, parallel)
    print(f"Restored {input_dir} into {output_dir}")
    return True


def cmd_list(car: str) -> bool:
    with CarReader(car) as r:
        print(f"root\t{r.root}")
        for e in r.iter_entries():
            if e.kind != KIND_FILE:
                print(f"dir\t{e.path}")
            elif e.is_part:
                print(f"part\t{e.size}\t{e.path}\t@{e.offset}/{e.file_size}")
            else:
                print(f"file\t{e.size}\t{e.path}")
    return True


def cmd_verify(car: str) -> bool:
    with CarReader(car) as r:
        ok = r.verify()
        n = len(r.order)
    if ok:
        print(f"OK: {n} block(s) verified")
    else:
        print("FAILED: block content does not match its CID", file=sys.stderr)
    return ok


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="carpack",
        description="Package directories into CAR slices with piece commitments and catalogs",
    )
    ap.add_argument("--log-level", default=DEFAULT_LOG_LEVEL, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Slice a directory into CAR files")
    ap_pack.add_argument("input_dir", help="Source directory")
    ap_pack.add_argument("--output-dir", help="Output directory (default: ./<timestamp>_<uuid>)")
    ap_pack.add_argument("--size-limit", required=True, help="Max payload bytes per CAR, e.g. 32GiB")
    ap_pack.add_argument("--folder-based", action="store_true", help="Treat the whole input directory as one source")
    ap_pack.add_argument("--parallel", type=int, default=DEFAULT_PARALLEL, help=f"Worker threads (default {DEFAULT_PARALLEL})")
    ap_pack.add_argument("--md5", action="store_true", help="Compute MD5 of CAR and source files")
    ap_pack.add_argument("--json-name", default=JSON_FILE_NAME_CAR_UPLOAD, help="JSON catalog file name")
    ap_pack.add_argument("--csv-name", default=CSV_FILE_NAME_CAR_UPLOAD, help="CSV catalog file name")

    ap_rec = sub.add_parser("reconcile", help="Rebuild catalogs from manifest.csv")
    ap_rec.add_argument("output_dir", help="Directory holding manifest.csv and the CAR files")
    ap_rec.add_argument("--input-dir", required=True, help="Source directory the CARs were made from")
    ap_rec.add_argument("--folder-based", action="store_true", help="Manifest was built in folder-based mode")
    ap_rec.add_argument("--md5", action="store_true", help="Compute MD5 of CAR and source files")

    ap_restore = sub.add_parser("restore", help="Extract CAR files back into a directory tree")
    ap_restore.add_argument("input_dir", help="Directory holding .car files")
    ap_restore.add_argument("--output-dir", required=True, help="Destination directory")
    ap_restore.add_argument("--parallel", type=int, default=DEFAULT_PARALLEL, help=f"Worker threads (default {DEFAULT_PARALLEL})")

    ap_list = sub.add_parser("list", help="List files inside a CAR")
    ap_list.add_argument("car", help="CAR path")

    ap_verify = sub.add_parser("verify", help="Re-hash every block of a CAR")
    ap_verify.add_argument("car", help="CAR path")

    args = ap.parse_args(argv)
    try:
        configure_logging(args.log_level)
        if args.cmd == "pack":
            cmd_pack(
                args.input_dir,
                output_dir=args.output_dir,
                size_limit=args.size_limit,
                folder_based=args.folder_based,
                parallel=args.parallel,
                generate_md5=args.md5,
                json_name=args.json_name,
                csv_name=args.csv_name,
            )
        elif args.cmd == "reconcile":
            cmd_reconcile(args.output_dir, input_dir=args.input_dir, folder_based=args.folder_based, generate_md5=args.md5)
        elif args.cmd == "restore":
            cmd_restore(args.input_dir, output_dir=args.output_dir, parallel=args.parallel)
        elif args.cmd == "list":
            cmd_list(args.car)
        elif args.cmd == "verify":
            sys.exit(0 if cmd_verify(args.car) else 1)
        else:
            raise RuntimeError("Unknown command")
    except (CarpackError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
