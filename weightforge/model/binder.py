"""
WeightForge Weight-Graph Binder
=================================
Binds a flat ``{name: tensor}`` mapping onto a module's parameter tree.

Binding Rules:
    - name has no slot in the tree      → silent no-op (partial weight sets,
                                          optional sub-modules)
    - shape differs from the slot       → ApplicationFailed
    - otherwise                         → explicit dtype coercion to the
                                          working precision, then assign

    Binding is idempotent: binding the same tensor twice leaves the tree in
    the same state as binding it once.

Quantized Layers:
    A manifest entry names a layer whose weight is stored as group codes.
    Two equivalent strategies are supported:

        1. Dequantize at load (default): read codes + scales (+ biases)
           from the entry's archive, dequantize with the entry's effective
           spec, bind the dense weight like any other tensor.
        2. Native: swap the nn.Linear for a QuantizedLinear that keeps the
           packed codes and dequantizes in forward().

    Both produce the same numbers; (2) trades compute for memory.

Usage:
    >>> binder = WeightBinder(model, dtype=torch.bfloat16)
    >>> binder.bind_manifest(manifest, "models/zimage-q8")
    >>> report = binder.bind_all(archive.load_all_tensors())
    >>> print(f"bound={len(report.bound)}, skipped={len(report.skipped)}")
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

import torch
import torch.nn as nn

from weightforge.archive.reader import SafeTensorsArchive
from weightforge.errors import ApplicationFailed
from weightforge.model.quantized_linear import QuantizedLinear
from weightforge.model.registry import ParameterRegistry
from weightforge.quantization.codec import QuantizedTensor, dequantize_codes, quantize
from weightforge.quantization.quantizer import transformer_tensor_name
from weightforge.quantization.spec import (
    LayerQuantEntry,
    QuantizationManifest,
    QuantizationMode,
    QuantizationSpec,
)

logger = logging.getLogger(__name__)

NameTransform = Callable[[str], str]


@dataclass
class BindReport:
    """Outcome of a bind pass."""
    bound: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def merge(self, other: BindReport) -> BindReport:
        self.bound.extend(other.bound)
        self.skipped.extend(other.skipped)
        return self


class WeightBinder:
    """
    Binds tensors into a module through a ParameterRegistry.

    Parameters
    ----------
    module : nn.Module
        The model whose parameters are overwritten. Requires exclusive
        access for the duration of a bind pass.
    dtype : torch.dtype or None
        Working precision. Floating tensors are converted to it before
        binding (floating slots are moved to it). None keeps each slot's
        current dtype.
    registry : ParameterRegistry or None
        Pre-built registry; built from ``module`` when omitted.
    """

    def __init__(
        self,
        module: nn.Module,
        dtype: Optional[torch.dtype] = None,
        registry: Optional[ParameterRegistry] = None,
    ):
        self.module = module
        self.dtype = dtype
        self.registry = registry if registry is not None else ParameterRegistry.from_module(module)

    # ─── Single Tensors ─────────────────────────────────────────────────

    def _coerce(self, tensor: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        if target.is_floating_point() and tensor.is_floating_point():
            dtype = self.dtype or target.dtype
        else:
            dtype = target.dtype
        return tensor.to(dtype=dtype)

    def bind(self, name: str, tensor: torch.Tensor) -> bool:
        """
        Bind one tensor.

        Returns
        -------
        bool
            True if bound, False if the tree has no slot called ``name``.

        Raises
        ------
        ApplicationFailed
            If the tensor's shape differs from the slot's.
        """
        slot = self.registry.get(name)
        if slot is None:
            logger.debug(f"No parameter for {name}, skipping")
            return False

        if isinstance(slot.module, QuantizedLinear) and slot.attr == "weight":
            if tensor.is_floating_point():
                return self._bind_dense_into_quantized(name, slot.module, tensor)

        target = slot.tensor
        if tuple(tensor.shape) != tuple(target.shape):
            raise ApplicationFailed(
                f"shape mismatch for {name}: model expects {tuple(target.shape)}, "
                f"got {tuple(tensor.shape)}"
            )

        self.registry.assign(name, self._coerce(tensor, target))
        return True

    def _bind_dense_into_quantized(
        self, name: str, layer: QuantizedLinear, tensor: torch.Tensor
    ) -> bool:
        # A full-precision weight arriving for a natively quantized layer is
        # re-quantized with the layer's own spec
        expected = (layer.out_features, layer.in_features)
        if tuple(tensor.shape) != expected:
            raise ApplicationFailed(
                f"shape mismatch for {name}: model expects {expected}, "
                f"got {tuple(tensor.shape)}"
            )
        layer.load_quantized(quantize(tensor, layer.spec))
        return True

    def bind_all(
        self,
        tensors: dict[str, torch.Tensor],
        corrections: Optional[dict[str, torch.Tensor]] = None,
    ) -> BindReport:
        """
        Bind every tensor of a flat mapping.

        Parameters
        ----------
        tensors : dict[str, torch.Tensor]
            Name → tensor, names already in the model's convention.
        corrections : dict[str, torch.Tensor] or None
            Additive corrections (e.g. LoRA deltas) keyed by the same names.
            Each is added to its tensor in float32 before binding.

        Raises
        ------
        ApplicationFailed
            If a correction has no tensor to correct or does not match its
            shape (checked before anything is bound), or a tensor's shape
            differs from its slot.
        """
        corrections = corrections or {}
        orphans = sorted(set(corrections) - set(tensors))
        if orphans:
            raise ApplicationFailed(f"corrections without base tensors: {orphans[:5]}")
        for name, delta in corrections.items():
            if tuple(delta.shape) != tuple(tensors[name].shape):
                raise ApplicationFailed(
                    f"correction for {name} has shape {tuple(delta.shape)}, "
                    f"tensor has {tuple(tensors[name].shape)}"
                )

        report = BindReport()
        for name, tensor in tensors.items():
            delta = corrections.get(name)
            if delta is not None:
                tensor = (tensor.to(torch.float32) + delta.to(torch.float32)).to(tensor.dtype)

            if self.bind(name, tensor):
                report.bound.append(name)
            else:
                report.skipped.append(name)

        logger.debug(f"Bound {len(report.bound)} tensors, skipped {len(report.skipped)}")
        return report

    # ─── Quantized Layers ───────────────────────────────────────────────

    @staticmethod
    def read_quantized(
        archive: SafeTensorsArchive,
        entry: LayerQuantEntry,
        spec: QuantizationSpec,
    ) -> QuantizedTensor:
        """Read the codes and group parameters of ``entry`` from ``archive``."""
        codes = archive.tensor(f"{entry.name}.weight")
        scales = archive.tensor(f"{entry.name}.scales")
        biases = None
        if spec.mode is QuantizationMode.AFFINE:
            biases = archive.tensor(f"{entry.name}.biases")
        return QuantizedTensor(
            codes=codes, scales=scales, biases=biases, shape=tuple(entry.shape), spec=spec
        )

    def bind_quantized(
        self,
        entry: LayerQuantEntry,
        source: Union[SafeTensorsArchive, str, Path],
        defaults: QuantizationSpec,
        name_transform: NameTransform = transformer_tensor_name,
        native: bool = False,
    ) -> bool:
        """
        Bind one manifest layer.

        ``source`` is either the open archive holding the layer's payload or
        the manifest directory, in which case ``entry.payload_file`` is
        opened relative to it. Returns False (no-op) when the model has no
        such layer.
        """
        if not isinstance(source, SafeTensorsArchive):
            with SafeTensorsArchive(Path(source) / entry.payload_file) as archive:
                return self.bind_quantized(
                    entry, archive, defaults, name_transform=name_transform, native=native
                )
        archive = source

        spec = entry.effective_spec(defaults)
        spec.validate()
        path = name_transform(entry.name)

        if native:
            layer = self.registry.module_at(path)
            if layer is None:
                logger.debug(f"No layer for {entry.name}, skipping")
                return False
            quantized = self.read_quantized(archive, entry, spec)
            return self._bind_native(path, layer, quantized)

        weight_path = f"{path}.weight"
        if weight_path not in self.registry:
            logger.debug(f"No parameter for {weight_path}, skipping")
            return False

        quantized = self.read_quantized(archive, entry, spec)
        weight = dequantize_codes(
            quantized.codes,
            quantized.scales,
            quantized.biases,
            spec,
            shape=quantized.shape,
        )
        return self.bind(weight_path, weight)

    def _bind_native(self, path: str, layer: nn.Module, quantized: QuantizedTensor) -> bool:
        if isinstance(layer, QuantizedLinear) and layer.spec == quantized.spec:
            if tuple(quantized.shape) != (layer.out_features, layer.in_features):
                raise ApplicationFailed(
                    f"shape mismatch for {path}: model expects "
                    f"{(layer.out_features, layer.in_features)}, got {quantized.shape}"
                )
            layer.load_quantized(quantized)
            return True

        if not isinstance(layer, (nn.Linear, QuantizedLinear)):
            raise ApplicationFailed(
                f"{path} is a {type(layer).__name__}, only linear layers can be "
                f"bound natively quantized"
            )

        expected = (layer.out_features, layer.in_features)
        if tuple(quantized.shape) != expected:
            raise ApplicationFailed(
                f"shape mismatch for {path}: model expects {expected}, "
                f"got {quantized.shape}"
            )

        bias = layer.bias.detach() if layer.bias is not None else None
        replacement = QuantizedLinear.from_quantized(quantized, bias=bias).to(layer.weight.device)
        self.registry.replace_module(path, replacement)
        return True

    def bind_manifest(
        self,
        manifest: QuantizationManifest,
        root_dir: Union[str, Path],
        name_transform: NameTransform = transformer_tensor_name,
        native: bool = False,
        entries: Optional[list[LayerQuantEntry]] = None,
        lazy: bool = False,
    ) -> BindReport:
        """
        Bind every layer of a manifest (or the given subset of its entries).

        Each payload archive is opened once, relative to ``root_dir``.
        """
        root_dir = Path(root_dir)
        entries = manifest.layers if entries is None else entries
        report = BindReport()

        with ExitStack() as stack:
            archives: dict[str, SafeTensorsArchive] = {}
            for entry in entries:
                payload = entry.payload_file
                if payload not in archives:
                    archives[payload] = stack.enter_context(
                        SafeTensorsArchive(root_dir / payload, lazy=lazy)
                    )

                bound = self.bind_quantized(
                    entry,
                    archives[payload],
                    manifest.default_spec,
                    name_transform=name_transform,
                    native=native,
                )
                (report.bound if bound else report.skipped).append(entry.name)

        logger.info(
            f"Bound {len(report.bound)} quantized layers"
            f"{' (native)' if native else ''}, skipped {len(report.skipped)}"
        )
        return report
