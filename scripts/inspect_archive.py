#!/usr/bin/env python3
"""
WeightForge — Archive Inspection Script
=========================================
Prints the tensor table of a safetensors archive (or of every archive in a
directory) and, when present, a summary of the quantization manifest.

Usage:
    python scripts/inspect_archive.py models/zimage/transformer
    python scripts/inspect_archive.py model.safetensors --lazy
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from weightforge.archive.reader import SafeTensorsArchive, find_archives
from weightforge.errors import ArchiveError
from weightforge.quantization.quantizer import has_quantization
from weightforge.quantization.spec import QuantizationManifest

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def describe(path: Path, lazy: bool) -> bool:
    try:
        with SafeTensorsArchive(path, lazy=lazy) as archive:
            print(f"\n{path} ({archive.file_size / (1024 * 1024):.1f}MB, "
                  f"{len(archive)} tensors, header {archive.header_length}B)")
            if archive.metadata_dict:
                print(f"  metadata: {archive.metadata_dict}")
            for name in archive.tensor_names():
                try:
                    d = archive.metadata(name)
                except ArchiveError as e:
                    print(f"  {name:<60} INVALID: {e}")
                    continue
                print(f"  {name:<60} {str(d.dtype):<5} {list(d.shape)}")
    except ArchiveError as e:
        logger.error(f"{path}: {e}")
        return False
    return True


def main():
    parser = argparse.ArgumentParser(description="WeightForge Archive Inspection")
    parser.add_argument("path", type=str, help="Archive file or directory")
    parser.add_argument("--lazy", action="store_true",
                        help="Report invalid entries instead of failing on open")
    args = parser.parse_args()

    path = Path(args.path)
    archives = [path] if path.is_file() else find_archives(path)
    if not archives:
        logger.error(f"No safetensors archives found at {path}")
        sys.exit(1)

    ok = all([describe(archive, args.lazy) for archive in archives])

    if path.is_dir() and has_quantization(path):
        manifest = QuantizationManifest.load(path)
        print(f"\nquantization.json: {manifest.mode}, {manifest.bits}-bit, "
              f"group={manifest.group_size}, {len(manifest.layers)} layers")

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
