"""
WeightForge LoRA Merge Engine
==============================
Merges low-rank adapter deltas into bound base weights.

For every adapter pair sharing a base path:

    A = <base>.lora_A.weight  (or lora_down)    shape (rank, in)
    B = <base>.lora_B.weight  (or lora_up)      shape (out, rank)
    Δ = (B @ A) * strength * (alpha / rank)     alpha from <base>.alpha, if any
    W = <base>.weight + Δ

Convolution adapters (4-D A/B) are flattened to 2-D for the product and the
delta is reshaped to the base weight's shape.

All-or-Nothing:
    Every delta is computed and checked against its base weight before the
    first one is written. A malformed adapter (missing partner, missing base
    weight, incompatible ranks, wrong shape) raises ApplicationFailed and
    leaves the model untouched.

Usage:
    >>> weights = LoRALoader().load("loras/my_style")
    >>> LoRAMerger(scale=0.8).apply(weights, model)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

import torch
import torch.nn as nn

from weightforge.errors import ApplicationFailed
from weightforge.lora.loader import LoRAWeights
from weightforge.model.quantized_linear import QuantizedLinear
from weightforge.model.registry import ParameterRegistry
from weightforge.quantization.codec import QuantizedTensor, quantize

logger = logging.getLogger(__name__)

# (down suffix, up suffix) conventions
ADAPTER_SUFFIXES = (
    (".lora_A.weight", ".lora_B.weight"),
    (".lora_down.weight", ".lora_up.weight"),
)
ALPHA_SUFFIX = ".alpha"


@dataclass
class LoRAPair:
    """The two factors of one adapter and its optional alpha."""
    base: str
    down: Optional[torch.Tensor] = None
    up: Optional[torch.Tensor] = None
    alpha: Optional[float] = None


class LoRAMerger:
    """
    Computes and commits LoRA deltas.

    Parameters
    ----------
    scale : float
        LoRA strength, applied on top of each adapter's alpha / rank.
    """

    def __init__(self, scale: float = 1.0):
        self.scale = scale

    def pairs(self, weights: Union[LoRAWeights, dict[str, torch.Tensor]]) -> dict[str, LoRAPair]:
        """
        Group adapter tensors by base path.

        Tensors that are neither factors nor alphas are ignored with a
        warning; so is an alpha without factors.
        """
        tensors = weights.tensors if isinstance(weights, LoRAWeights) else weights
        pairs: dict[str, LoRAPair] = {}
        alphas: dict[str, float] = {}
        ignored = []

        for key, tensor in tensors.items():
            if key.endswith(ALPHA_SUFFIX):
                alphas[key[:-len(ALPHA_SUFFIX)]] = float(tensor.reshape(-1)[0])
                continue

            for down_suffix, up_suffix in ADAPTER_SUFFIXES:
                if key.endswith(down_suffix):
                    base = key[:-len(down_suffix)]
                    pairs.setdefault(base, LoRAPair(base)).down = tensor
                    break
                if key.endswith(up_suffix):
                    base = key[:-len(up_suffix)]
                    pairs.setdefault(base, LoRAPair(base)).up = tensor
                    break
            else:
                ignored.append(key)

        for base, alpha in alphas.items():
            if base in pairs:
                pairs[base].alpha = alpha
            else:
                logger.warning(f"LoRA alpha without adapter factors: {base}{ALPHA_SUFFIX}")

        if ignored:
            logger.warning(f"Ignoring {len(ignored)} non-adapter LoRA tensors, e.g. {ignored[0]}")
        return pairs

    def compute_deltas(
        self,
        weights: Union[LoRAWeights, dict[str, torch.Tensor]],
        registry: ParameterRegistry,
    ) -> dict[str, torch.Tensor]:
        """
        Compute ``{"<base>.weight": Δ}`` for every adapter, in float32.

        Raises
        ------
        ApplicationFailed
            For a missing partner factor, a base path with no weight in the
            model, factors whose ranks disagree, or a delta whose shape
            differs from the base weight.
        """
        deltas = {}
        for base, pair in sorted(self.pairs(weights).items()):
            if pair.down is None or pair.up is None:
                missing = "down (lora_A)" if pair.down is None else "up (lora_B)"
                raise ApplicationFailed(f"adapter {base} has no {missing} factor")

            path = f"{base}.weight"
            base_shape = self._base_shape(registry, base, path)

            down = pair.down.to(torch.float32)
            up = pair.up.to(torch.float32)
            rank = down.shape[0]
            down = down.reshape(rank, -1)
            up = up.reshape(up.shape[0], -1)
            if up.shape[1] != rank:
                raise ApplicationFailed(
                    f"adapter {base}: lora_B has inner dimension {up.shape[1]}, "
                    f"lora_A has rank {rank}"
                )

            factor = self.scale * (pair.alpha / rank if pair.alpha is not None else 1.0)
            delta = (up @ down) * factor

            if delta.numel() != math.prod(base_shape):
                raise ApplicationFailed(
                    f"adapter {base}: delta shape {tuple(delta.shape)} does not match "
                    f"base weight {base_shape}"
                )
            if len(base_shape) != 2 and delta.dim() == 2:
                delta = delta.reshape(base_shape)
            if tuple(delta.shape) != base_shape:
                raise ApplicationFailed(
                    f"adapter {base}: delta shape {tuple(delta.shape)} does not match "
                    f"base weight {base_shape}"
                )
            deltas[path] = delta

        return deltas

    @staticmethod
    def _base_shape(registry: ParameterRegistry, base: str, path: str) -> tuple[int, ...]:
        layer = registry.module_at(base)
        if isinstance(layer, QuantizedLinear):
            return (layer.out_features, layer.in_features)
        if path not in registry:
            raise ApplicationFailed(f"adapter targets {path}, which the model does not have")
        return tuple(registry.tensor(path).shape)

    def apply(
        self,
        weights: Union[LoRAWeights, dict[str, torch.Tensor]],
        target: Union[nn.Module, ParameterRegistry],
    ) -> dict[str, torch.Tensor]:
        """
        Merge every adapter into ``target``.

        Natively quantized layers are dequantized, corrected and quantized
        again with their own spec.

        Returns
        -------
        dict[str, torch.Tensor]
            The deltas that were added, by weight path.
        """
        registry = target if isinstance(target, ParameterRegistry) else ParameterRegistry(target)
        deltas = self.compute_deltas(weights, registry)

        # Everything that can fail happens before the first write
        updates: list[tuple[str, Union[torch.Tensor, QuantizedTensor]]] = []
        for path, delta in deltas.items():
            base = path[:-len(".weight")]
            layer = registry.module_at(base)
            if isinstance(layer, QuantizedLinear):
                merged = layer.dequantized_weight(torch.float32) + delta.to(layer.weight.device)
                updates.append((base, quantize(merged, layer.spec)))
            else:
                current = registry.tensor(path)
                merged = current.to(torch.float32) + delta.to(current.device)
                updates.append((path, merged.to(current.dtype)))

        with torch.no_grad():
            for path, value in updates:
                if isinstance(value, QuantizedTensor):
                    registry.module_at(path).load_quantized(value)
                else:
                    registry.assign(path, value)

        logger.info(f"Merged {len(deltas)} LoRA deltas (scale={self.scale})")
        return deltas
