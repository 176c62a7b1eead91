#!/usr/bin/env python3
"""
WeightForge — Quantization Script
===================================
Quantizes every safetensors archive of a model directory into a new
directory, writing quantization.json next to the quantized archives.

Usage:
    python scripts/quantize.py models/zimage models/zimage-q8
    python scripts/quantize.py models/zimage models/zimage-q4 --bits 4 --group-size 64
    python scripts/quantize.py models/zimage models/zimage-mxfp4 --mode mxfp4 --bits 4
    python scripts/quantize.py models/zimage out --config configs/default.yaml
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from weightforge.config import QuantizationConfig, WeightForgeConfig
from weightforge.errors import WeightForgeError
from weightforge.quantization.quantizer import ModelQuantizer
from weightforge.quantization.spec import QuantizationManifest

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="WeightForge Quantization")
    parser.add_argument("input_dir", type=str, help="Directory of full-precision archives")
    parser.add_argument("output_dir", type=str, help="Destination directory")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--group-size", type=int, default=None)
    parser.add_argument("--bits", type=int, default=None)
    parser.add_argument("--mode", type=str, default=None, choices=["affine", "mxfp4"])
    parser.add_argument("--manifest", type=str, default=None,
                        help="Existing quantization.json with per-layer overrides")
    parser.add_argument("--model-id", type=str, default=None)
    parser.add_argument("--revision", type=str, default=None)
    parser.add_argument("--plan-only", action="store_true",
                        help="Print the planned manifest and exit")
    args = parser.parse_args()

    if args.smoke_test:
        config = WeightForgeConfig.for_smoke_test()
    elif args.config:
        config = WeightForgeConfig.from_yaml(args.config)
    else:
        config = WeightForgeConfig()

    quant_config = QuantizationConfig(
        group_size=args.group_size or config.quantization.group_size,
        bits=args.bits or config.quantization.bits,
        mode=args.mode or config.quantization.mode,
    )
    quant_config.validate()

    logger.info("=" * 60)
    logger.info(
        f"Quantizing {args.input_dir} → {args.output_dir} "
        f"({quant_config.mode}, {quant_config.bits}-bit, group={quant_config.group_size})"
    )
    logger.info("=" * 60)

    quantizer = ModelQuantizer(spec=quant_config.to_spec())
    manifest = QuantizationManifest.load(args.manifest) if args.manifest else None

    try:
        if args.plan_only:
            manifest = manifest or quantizer.plan(
                args.input_dir, model_id=args.model_id, revision=args.revision
            )
            print(json.dumps(manifest.to_dict(), indent=2))
            return

        manifest = quantizer.quantize_directory(
            args.input_dir,
            args.output_dir,
            manifest=manifest,
            model_id=args.model_id,
            revision=args.revision,
        )
    except WeightForgeError as e:
        logger.error(f"Quantization failed: {e}")
        sys.exit(1)

    logger.info(f"\nQuantization complete! {len(manifest.layers)} layers → {args.output_dir}")


if __name__ == "__main__":
    main()
