"""
WeightForge Offline Model Quantizer
=====================================
Converts a directory of full-precision safetensors archives into a
quantized directory plus a ``quantization.json`` manifest.

Conversion Algorithm:
    1. Find every *.safetensors file under the input directory
       (components such as transformer/ and text_encoder/ included)
    2. Plan: every 2-D floating ``*.weight`` whose input dimension divides
       the group size becomes a LayerQuantEntry (or use a given manifest)
    3. For each archive, one at a time:
        a. Read tensors lazily from the source archive
        b. Quantized layers → ``<layer>.weight`` (packed codes),
           ``<layer>.scales``, ``<layer>.biases`` (affine only),
           written to the entry's quant_file when one is set
        c. Everything else is copied through unchanged
        d. Write the archive at the same relative path
    4. Copy side files (config.json, tokenizer files, ...)
    5. Write quantization.json

    Only one archive's tensors are held in memory at a time.

Naming Conventions:
    Quantized layers are looked up by module path. The transformer uses
    its checkpoint paths unchanged; the text encoder's checkpoints name the
    backbone ``encoder.*`` while the module tree calls it ``model.*``, so
    text_encoder_tensor_name() rewrites that prefix before lookup.

Usage:
    >>> quantizer = ModelQuantizer(QuantizationSpec(group_size=64, bits=4))
    >>> manifest = quantizer.quantize_directory("models/zimage", "models/zimage-q4")
    >>> has_quantization("models/zimage-q4")
    True
"""

from __future__ import annotations

import logging
import shutil
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Optional, Union

import torch
from tqdm import tqdm

from weightforge.archive.reader import (
    ARCHIVE_SUFFIX,
    SafeTensorsArchive,
    TensorDescriptor,
    find_archives,
)
from weightforge.archive.writer import write_archive
from weightforge.errors import (
    NoSafetensorsFound,
    OutputDirectoryCreationFailed,
    QuantizationFailed,
)
from weightforge.quantization.codec import quantize
from weightforge.quantization.spec import (
    MANIFEST_FILENAME,
    LayerQuantEntry,
    QuantizationManifest,
    QuantizationSpec,
)

logger = logging.getLogger(__name__)

WEIGHT_SUFFIX = ".weight"
ENCODER_PREFIX = "encoder."
TEXT_ENCODER_MODEL_PREFIX = "model."

LayerFilter = Callable[[TensorDescriptor], bool]


# =============================================================================
# Manifest Detection & Name Transforms
# =============================================================================

def has_quantization(directory: Union[str, Path]) -> bool:
    """True iff ``directory`` holds a ``quantization.json`` that parses."""
    path = Path(directory) / MANIFEST_FILENAME
    if not path.is_file():
        return False
    try:
        QuantizationManifest.load(path)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable quantization manifest {path}: {e}")
        return False
    return True


def transformer_tensor_name(path: str) -> str:
    """Transformer checkpoints already use module paths."""
    return path


def text_encoder_tensor_name(path: str) -> str:
    """Map ``encoder.*`` checkpoint paths onto the text encoder's ``model.*`` tree."""
    if path.startswith(ENCODER_PREFIX):
        return TEXT_ENCODER_MODEL_PREFIX + path[len(ENCODER_PREFIX):]
    return path


def default_layer_filter(descriptor: TensorDescriptor) -> bool:
    """Linear weights: 2-D floating tensors named ``*.weight``."""
    return (
        descriptor.name.endswith(WEIGHT_SUFFIX)
        and len(descriptor.shape) == 2
        and descriptor.dtype.is_floating_point
    )


# =============================================================================
# Quantizer
# =============================================================================

class ModelQuantizer:
    """
    Offline quantizer for a directory of safetensors archives.

    Parameters
    ----------
    spec : QuantizationSpec
        Manifest-wide defaults used when planning. Validated immediately.
    layer_filter : callable or None
        Extra predicate on tensor descriptors deciding which weights are
        quantized. Defaults to :func:`default_layer_filter`.
    """

    def __init__(
        self,
        spec: Optional[QuantizationSpec] = None,
        layer_filter: Optional[LayerFilter] = None,
    ):
        self.spec = spec or QuantizationSpec()
        self.spec.validate()
        self.layer_filter = layer_filter or default_layer_filter

    def _eligible(self, descriptor: TensorDescriptor) -> bool:
        if not self.layer_filter(descriptor):
            return False
        return descriptor.shape[-1] % self.spec.group_size == 0

    def plan(
        self,
        input_dir: Union[str, Path],
        model_id: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> QuantizationManifest:
        """
        Build a manifest listing every eligible layer under ``input_dir``.

        Raises
        ------
        NoSafetensorsFound
            If the directory contains no archives.
        """
        input_dir = Path(input_dir)
        archives = find_archives(input_dir)
        if not archives:
            raise NoSafetensorsFound(input_dir)

        layers = []
        for archive_path in archives:
            relative = archive_path.relative_to(input_dir).as_posix()
            with SafeTensorsArchive(archive_path) as archive:
                for descriptor in archive.all_metadata():
                    if not self._eligible(descriptor):
                        continue
                    out_dim, in_dim = descriptor.shape
                    layers.append(LayerQuantEntry(
                        name=descriptor.name[:-len(WEIGHT_SUFFIX)],
                        shape=list(descriptor.shape),
                        in_dim=in_dim,
                        out_dim=out_dim,
                        file=relative,
                    ))

        logger.info(f"Planned {len(layers)} layers across {len(archives)} archives")
        return QuantizationManifest(
            group_size=self.spec.group_size,
            bits=self.spec.bits,
            mode=self.spec.mode,
            layers=layers,
            model_id=model_id,
            revision=revision,
        )

    def quantize_directory(
        self,
        input_dir: Union[str, Path],
        output_dir: Union[str, Path],
        manifest: Optional[QuantizationManifest] = None,
        model_id: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> QuantizationManifest:
        """
        Quantize every archive under ``input_dir`` into ``output_dir``.

        Parameters
        ----------
        input_dir : str or Path
            Directory of full-precision archives.
        output_dir : str or Path
            Destination; created if needed.
        manifest : QuantizationManifest or None
            Layers to quantize, with optional per-layer overrides. Planned
            from ``input_dir`` when omitted.
        model_id, revision : str or None
            Provenance recorded in a planned manifest.

        Returns
        -------
        QuantizationManifest
            The manifest written to ``output_dir/quantization.json``.

        Raises
        ------
        NoSafetensorsFound
            If ``input_dir`` contains no archives.
        OutputDirectoryCreationFailed
            If ``output_dir`` cannot be created.
        QuantizationFailed
            If a listed layer is missing, has an unexpected shape or cannot
            be quantized with its effective spec.
        """
        input_dir = Path(input_dir)
        output_dir = Path(output_dir)

        archives = find_archives(input_dir)
        if not archives:
            raise NoSafetensorsFound(input_dir)

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirectoryCreationFailed(output_dir) from e

        if manifest is None:
            manifest = self.plan(input_dir, model_id=model_id, revision=revision)

        start_time = time.time()
        entries_by_file: dict[str, dict[str, LayerQuantEntry]] = defaultdict(dict)
        for entry in manifest.layers:
            entries_by_file[entry.file][entry.name + WEIGHT_SUFFIX] = entry

        known_files = {p.relative_to(input_dir).as_posix() for p in archives}
        unknown = sorted(set(entries_by_file) - known_files)
        if unknown:
            raise QuantizationFailed(f"manifest references missing archives: {unknown}")
        clashes = sorted(
            {e.payload_file for e in manifest.layers if e.payload_file != e.file} & known_files
        )
        if clashes:
            raise QuantizationFailed(f"quant_file must not name a source archive: {clashes}")

        bytes_in = 0
        bytes_out = 0
        n_quantized = 0
        # Payload archives shared by several source archives are written last
        separate: dict[str, dict[str, torch.Tensor]] = defaultdict(dict)
        separate_metadata: dict[str, str] = {"format": "pt"}

        for archive_path in tqdm(archives, desc="Quantizing", unit="file"):
            relative = archive_path.relative_to(input_dir).as_posix()
            entries = entries_by_file.get(relative, {})
            kept: dict[str, torch.Tensor] = {}

            with SafeTensorsArchive(archive_path) as archive:
                missing = [name for name in entries if name not in archive]
                if missing:
                    raise QuantizationFailed(f"{relative} has no tensors {missing}")

                metadata = dict(archive.metadata_dict)
                for name in archive.tensor_names():
                    tensor = archive.tensor(name)
                    bytes_in += tensor.numel() * tensor.element_size()

                    entry = entries.get(name)
                    if entry is None:
                        if name in kept:
                            raise QuantizationFailed(f"output tensors already exist: {[name]}")
                        kept[name] = tensor
                        continue

                    if list(tensor.shape) != list(entry.shape):
                        raise QuantizationFailed(
                            f"layer {entry.name} has shape {list(tensor.shape)}, "
                            f"manifest says {entry.shape}"
                        )

                    if entry.payload_file == relative:
                        payload = kept
                    else:
                        payload = separate[entry.payload_file]
                    self._add_quantized(payload, entry, tensor, manifest.default_spec)
                    n_quantized += 1

            metadata.setdefault("format", "pt")
            path = write_archive(kept, output_dir / relative, metadata=metadata)
            bytes_out += path.stat().st_size

        for target, tensors in separate.items():
            path = write_archive(tensors, output_dir / target, metadata=separate_metadata)
            bytes_out += path.stat().st_size

        self._copy_side_files(input_dir, output_dir)
        manifest.save(output_dir / MANIFEST_FILENAME)

        elapsed = time.time() - start_time
        logger.info(
            f"Quantization complete:\n"
            f"  Layers: {n_quantized}\n"
            f"  Size: {bytes_in / (1024 * 1024):.1f}MB → {bytes_out / (1024 * 1024):.1f}MB\n"
            f"  Time: {elapsed:.2f}s"
        )
        return manifest

    @staticmethod
    def _add_quantized(
        payload: dict[str, torch.Tensor],
        entry: LayerQuantEntry,
        tensor: torch.Tensor,
        defaults: QuantizationSpec,
    ) -> None:
        spec = entry.effective_spec(defaults)
        quantized = quantize(tensor, spec)

        names = {
            f"{entry.name}.weight": quantized.codes,
            f"{entry.name}.scales": quantized.scales,
        }
        if quantized.biases is not None:
            names[f"{entry.name}.biases"] = quantized.biases

        clashes = [name for name in names if name in payload]
        if clashes:
            raise QuantizationFailed(f"output tensors already exist: {clashes}")
        payload.update(names)

        logger.debug(
            f"Quantized {entry.name} {entry.shape} "
            f"({spec.mode}, {spec.bits}-bit, group={spec.group_size})"
        )

    @staticmethod
    def _copy_side_files(input_dir: Path, output_dir: Path) -> None:
        for path in input_dir.rglob("*"):
            if not path.is_file():
                continue
            if path.suffix == ARCHIVE_SUFFIX or path.name == MANIFEST_FILENAME:
                continue
            target = output_dir / path.relative_to(input_dir)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
