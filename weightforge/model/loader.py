"""
WeightForge Component Loader
==============================
Loads one model component (transformer, text encoder, VAE) from a directory
of safetensors archives into an already constructed module.

Loading Algorithm:
    1. Enumerate the component's archives
    2. Look for ``quantization.json`` in the component directory, then in its
       parent (a quantized model directory holds one manifest for all
       components)
    3. Bind every manifest layer belonging to this component, dequantized or
       natively quantized
    4. Stream the archives one at a time and bind every remaining
       full-precision tensor, names passed through the component's transform
    5. Merge the LoRA, if one was requested

Memory:
    Only one archive's tensors are materialized at a time; the module
    holds the only other copy.

Usage:
    >>> loader = ComponentLoader(WeightForgeConfig())
    >>> results = loader.load_into(
    ...     text_encoder,
    ...     "models/zimage-q8/text_encoder",
    ...     name_transform=text_encoder_tensor_name,
    ... )
"""

from __future__ import annotations

import gc
import logging
import time
from pathlib import Path
from typing import Optional, Union

import torch.nn as nn

from weightforge.archive.reader import SafeTensorsArchive, find_archives
from weightforge.config import WeightForgeConfig
from weightforge.errors import NoSafetensorsFound
from weightforge.lora.loader import LoRALoader
from weightforge.lora.merge import LoRAMerger
from weightforge.model.binder import BindReport, NameTransform, WeightBinder
from weightforge.quantization.quantizer import has_quantization, transformer_tensor_name
from weightforge.quantization.spec import (
    MANIFEST_FILENAME,
    LayerQuantEntry,
    QuantizationManifest,
)

logger = logging.getLogger(__name__)

QUANTIZED_SUFFIXES = (".weight", ".scales", ".biases")


class ComponentLoader:
    """
    Binds a component directory into a module.

    Parameters
    ----------
    config : WeightForgeConfig
        Loader, quantization and LoRA settings.
    """

    def __init__(self, config: WeightForgeConfig):
        self.config = config

    def load_into(
        self,
        module: nn.Module,
        component_dir: Union[str, Path],
        name_transform: NameTransform = transformer_tensor_name,
        lora_path: Optional[str] = None,
        lora_scale: Optional[float] = None,
    ) -> dict:
        """
        Load the component at ``component_dir`` into ``module``.

        Parameters
        ----------
        module : nn.Module
            Constructed model; its parameters are overwritten in place.
        component_dir : str or Path
            Directory holding the component's archives.
        name_transform : callable
            Maps archive tensor names onto the module's parameter paths.
        lora_path : str or None
            LoRA to merge after loading. Defaults to ``config.lora.path``.
        lora_scale : float or None
            LoRA strength. Defaults to ``config.lora.scale``.

        Returns
        -------
        dict
            Load results including:
            - load_time_seconds: total wall time
            - n_archives: archives read
            - n_quantized_layers: manifest layers bound
            - n_bound / n_skipped: full-precision tensors bound / without a slot
            - n_lora_deltas: LoRA deltas merged (0 without a LoRA)
            - quantized: whether a manifest was found

        Raises
        ------
        FileNotFoundError
            If ``component_dir`` does not exist.
        NoSafetensorsFound
            If it holds no archives.
        """
        component_dir = Path(component_dir)
        if not component_dir.is_dir():
            raise FileNotFoundError(f"Component directory not found: {component_dir}")

        archives = find_archives(component_dir)
        if not archives:
            raise NoSafetensorsFound(component_dir)

        loader_config = self.config.loader
        start_time = time.time()
        binder = WeightBinder(module, dtype=loader_config.resolve_dtype())

        manifest, manifest_root = self._find_manifest(component_dir)
        quantized_report = BindReport()
        skip: dict[Path, set[str]] = {}

        if manifest is not None:
            entries = self._component_entries(manifest, manifest_root, archives)
            logger.info(
                f"Found {MANIFEST_FILENAME} in {manifest_root}: "
                f"{len(entries)} quantized layers for {component_dir.name}"
            )
            quantized_report = binder.bind_manifest(
                manifest,
                manifest_root,
                name_transform=name_transform,
                native=loader_config.native_quantized,
                entries=entries,
                lazy=loader_config.lazy_headers,
            )
            for entry in entries:
                names = skip.setdefault((manifest_root / entry.payload_file).resolve(), set())
                names.update(entry.name + suffix for suffix in QUANTIZED_SUFFIXES)

        report = BindReport()
        for archive_path in archives:
            excluded = skip.get(archive_path.resolve(), set())
            with SafeTensorsArchive(archive_path, lazy=loader_config.lazy_headers) as archive:
                tensors = {
                    name_transform(name): archive.tensor(name)
                    for name in archive.tensor_names()
                    if name not in excluded
                }
            report.merge(binder.bind_all(tensors))
            logger.debug(f"Bound {len(tensors)} tensors from {archive_path.name}")
            del tensors
            gc.collect()

        n_deltas = 0
        lora_path = lora_path if lora_path is not None else self.config.lora.path
        if lora_path is not None:
            scale = lora_scale if lora_scale is not None else self.config.lora.scale
            weights = LoRALoader().load(lora_path, cache_dir=self.config.lora.cache_dir)
            n_deltas = len(LoRAMerger(scale=scale).apply(weights, binder.registry))

        elapsed = time.time() - start_time
        results = {
            "load_time_seconds": elapsed,
            "n_archives": len(archives),
            "n_quantized_layers": len(quantized_report.bound),
            "n_bound": len(report.bound),
            "n_skipped": len(report.skipped),
            "n_lora_deltas": n_deltas,
            "quantized": manifest is not None,
        }

        logger.info(
            f"Loaded {component_dir}:\n"
            f"  Archives: {len(archives)}\n"
            f"  Quantized layers: {results['n_quantized_layers']}"
            f"{' (native)' if loader_config.native_quantized else ''}\n"
            f"  Tensors: {results['n_bound']} bound, {results['n_skipped']} skipped\n"
            f"  LoRA deltas: {n_deltas}\n"
            f"  Time: {elapsed:.2f}s"
        )
        return results

    @staticmethod
    def _find_manifest(
        component_dir: Path,
    ) -> tuple[Optional[QuantizationManifest], Optional[Path]]:
        for directory in (component_dir, component_dir.parent):
            if has_quantization(directory):
                return QuantizationManifest.load(directory), directory
        return None, None

    @staticmethod
    def _component_entries(
        manifest: QuantizationManifest,
        manifest_root: Path,
        archives: list[Path],
    ) -> list[LayerQuantEntry]:
        """Manifest layers whose source archive lives in this component."""
        local = {path.resolve() for path in archives}
        return [
            entry for entry in manifest.layers
            if (manifest_root / entry.file).resolve() in local
        ]
