"""
WeightForge Quantized Linear Layer
====================================
A drop-in ``nn.Linear`` replacement that keeps its weight as packed group
quantization codes and dequantizes on the fly in ``forward``.

State dict layout (same names the offline quantizer writes):
    <layer>.weight   uint8  packed codes   (out_features, in_features * bits / 8)
    <layer>.scales          per-group scales (out_features, in_features / group_size)
    <layer>.biases   float32 per-group biases (affine only)
    <layer>.bias            optional output bias, full precision

Memory:
    An 8-bit affine layer with group_size=32 stores 1 + 8/32 = 1.25 bytes per
    weight instead of 2 (bf16) or 4 (fp32); a 4-bit layer stores 0.75.

The forward result equals ``F.linear(x, dequantize(weight))``: the
dequantize-at-load strategy and this layer are numerically identical.

Usage:
    >>> qlinear = QuantizedLinear.from_linear(nn.Linear(256, 128), QuantizationSpec(bits=4))
    >>> y = qlinear(torch.randn(2, 256))
"""

from __future__ import annotations

import logging
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from weightforge.errors import QuantizationFailed
from weightforge.quantization.codec import QuantizedTensor, dequantize_codes, quantize
from weightforge.quantization.spec import QuantizationMode, QuantizationSpec

logger = logging.getLogger(__name__)


class QuantizedLinear(nn.Module):
    """
    Linear layer with a group-quantized weight.

    Parameters
    ----------
    in_features : int
        Input features. Must be divisible by ``spec.group_size``.
    out_features : int
        Output features.
    bias : bool
        Whether the layer has a (full-precision) output bias.
    spec : QuantizationSpec
        Codec parameters for the weight.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        spec: Optional[QuantizationSpec] = None,
    ):
        super().__init__()
        self.spec = spec or QuantizationSpec()
        self.spec.validate()
        if in_features % self.spec.group_size != 0:
            raise QuantizationFailed(
                f"in_features {in_features} is not divisible by group size "
                f"{self.spec.group_size}"
            )

        self.in_features = in_features
        self.out_features = out_features
        n_groups = in_features // self.spec.group_size
        affine = self.spec.mode is QuantizationMode.AFFINE

        self.register_buffer(
            "weight",
            torch.zeros(out_features, in_features * self.spec.bits // 8, dtype=torch.uint8),
        )
        self.register_buffer(
            "scales",
            torch.zeros(out_features, n_groups, dtype=torch.float32 if affine else torch.uint8),
        )
        if affine:
            self.register_buffer("biases", torch.zeros(out_features, n_groups))
        else:
            self.register_buffer("biases", None)

        if bias:
            self.bias = nn.Parameter(torch.zeros(out_features))
        else:
            self.register_parameter("bias", None)

    @classmethod
    def from_linear(cls, linear: nn.Linear, spec: QuantizationSpec) -> QuantizedLinear:
        """Quantize an existing ``nn.Linear``."""
        layer = cls(
            linear.in_features,
            linear.out_features,
            bias=linear.bias is not None,
            spec=spec,
        )
        layer.load_quantized(quantize(linear.weight, spec))
        if linear.bias is not None:
            layer.bias.data = linear.bias.detach().clone()
        return layer

    @classmethod
    def from_quantized(
        cls,
        quantized: QuantizedTensor,
        bias: Optional[torch.Tensor] = None,
    ) -> QuantizedLinear:
        """Wrap a quantized 2-D weight (``(out_features, in_features)``)."""
        if len(quantized.shape) != 2:
            raise QuantizationFailed(
                f"QuantizedLinear needs a 2-D weight, got shape {quantized.shape}"
            )
        out_features, in_features = quantized.shape
        layer = cls(in_features, out_features, bias=bias is not None, spec=quantized.spec)
        layer.load_quantized(quantized)
        if bias is not None:
            layer.bias.data = bias.detach().clone()
        return layer

    @torch.no_grad()
    def load_quantized(self, quantized: QuantizedTensor) -> None:
        """Replace the stored codes and group parameters."""
        if quantized.spec != self.spec:
            raise QuantizationFailed(
                f"spec mismatch: layer uses {self.spec}, tensor uses {quantized.spec}"
            )
        if tuple(quantized.shape) != (self.out_features, self.in_features):
            raise QuantizationFailed(
                f"shape mismatch: layer is {(self.out_features, self.in_features)}, "
                f"tensor is {tuple(quantized.shape)}"
            )
        self.weight.copy_(quantized.codes)
        self.scales.copy_(quantized.scales)
        if self.biases is not None:
            self.biases.copy_(quantized.biases)

    def to_quantized(self) -> QuantizedTensor:
        return QuantizedTensor(
            codes=self.weight,
            scales=self.scales,
            biases=self.biases,
            shape=(self.out_features, self.in_features),
            spec=self.spec,
        )

    def dequantized_weight(self, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """The weight as a dense ``(out_features, in_features)`` tensor."""
        return dequantize_codes(
            self.weight,
            self.scales,
            self.biases,
            self.spec,
            shape=(self.out_features, self.in_features),
            dtype=dtype,
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        weight = self.dequantized_weight(dtype=x.dtype).to(x.device)
        bias = self.bias.to(dtype=x.dtype) if self.bias is not None else None
        return F.linear(x, weight, bias)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"bias={self.bias is not None}, mode={self.spec.mode}, "
            f"bits={self.spec.bits}, group_size={self.spec.group_size}"
        )
