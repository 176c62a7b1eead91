"""
WeightForge Quantization Spec & Manifest
==========================================
Declarative description of how a model directory is quantized.

QuantizationSpec:
    Codec parameters. Defaults are group_size=32, bits=8, mode=affine.

QuantizationManifest (quantization.json):
    Written next to a directory of quantized archives. Its presence is the
    signal that the directory is pre-quantized. It stores manifest-wide
    defaults plus one LayerQuantEntry per quantized layer; any field a layer
    sets overrides the default for that layer only.

    {
      "model_id": "Tongyi-MAI/Z-Image-Turbo",
      "revision": "main",
      "group_size": 32, "bits": 8, "mode": "affine",
      "layers": [
        {"name": "layers.0.attn.q_proj", "shape": [3840, 3840],
         "in_dim": 3840, "out_dim": 3840,
         "file": "transformer/model.safetensors",
         "quant_file": "transformer/model_quant.safetensors",   (optional)
         "group_size": 64, "bits": 4, "mode": "mxfp4"}         (optional)
      ]
    }

Override Resolution:
    effective.group_size = layer.group_size if set else manifest.group_size
    effective.bits       = layer.bits       if set else manifest.bits
    effective.mode       = layer.mode       if set else manifest.mode

Usage:
    >>> manifest = QuantizationManifest.load("model_q8/quantization.json")
    >>> entry = manifest.layers[0]
    >>> spec = entry.effective_spec(manifest.default_spec)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from weightforge.errors import InvalidBits, InvalidGroupSize

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "quantization.json"

SUPPORTED_GROUP_SIZES = (32, 64, 128)
SUPPORTED_BITS = (4, 8)


class QuantizationMode(str, Enum):
    AFFINE = "affine"
    MXFP4 = "mxfp4"

    def __str__(self) -> str:
        return self.value


def _parse_mode(value: Union[str, QuantizationMode]) -> QuantizationMode:
    try:
        return QuantizationMode(value)
    except ValueError:
        raise ValueError(
            f"Unknown quantization mode: '{value}'. Choose from: affine, mxfp4"
        ) from None


# =============================================================================
# Quantization Spec
# =============================================================================

@dataclass(frozen=True)
class QuantizationSpec:
    """
    Codec parameters.

    Parameters
    ----------
    group_size : int
        Elements sharing one set of group parameters. One of 32, 64, 128.
    bits : int
        Code width. One of 4, 8. mxfp4 always uses 4.
    mode : QuantizationMode
        ``affine`` (scale + bias per group) or ``mxfp4`` (shared exponent
        per group, E2M1 element codes).
    """
    group_size: int = 32
    bits: int = 8
    mode: QuantizationMode = QuantizationMode.AFFINE

    def __post_init__(self):
        if not isinstance(self.mode, QuantizationMode):
            object.__setattr__(self, "mode", _parse_mode(self.mode))

    def validate(self) -> None:
        """
        Reject unsupported parameters.

        Raises
        ------
        InvalidGroupSize
            If group_size is not one of 32, 64, 128.
        InvalidBits
            If bits is not one of 4, 8.
        """
        if self.group_size not in SUPPORTED_GROUP_SIZES:
            raise InvalidGroupSize(self.group_size)
        if self.bits not in SUPPORTED_BITS:
            raise InvalidBits(self.bits)

    @property
    def codes_per_byte(self) -> int:
        return 8 // self.bits

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QuantizationSpec:
        """Decode ``{"group_size", "bits", "mode"}``; missing keys take defaults."""
        if not isinstance(raw, dict):
            raise ValueError(f"Quantization parameters must be an object, got {raw!r}")
        defaults = cls()
        try:
            return cls(
                group_size=int(raw.get("group_size", defaults.group_size)),
                bits=int(raw.get("bits", defaults.bits)),
                mode=_parse_mode(raw.get("mode", defaults.mode)),
            )
        except TypeError as e:
            raise ValueError(f"Invalid quantization parameters: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {"group_size": self.group_size, "bits": self.bits, "mode": self.mode.value}


# =============================================================================
# Manifest
# =============================================================================

@dataclass
class LayerQuantEntry:
    """
    One quantized layer.

    Parameters
    ----------
    name : str
        Dotted module path of the layer (without the ``.weight`` suffix).
    shape : list[int]
        Full-precision weight shape, ``[out_dim, in_dim]`` for a linear.
    in_dim, out_dim : int
        Input and output features.
    file : str
        Archive holding the tensors, relative to the manifest directory.
    quant_file : str or None
        Archive holding the quantized payload, when different from ``file``.
    group_size, bits, mode : optional
        Per-layer overrides of the manifest defaults.
    """
    name: str
    shape: list[int]
    in_dim: int
    out_dim: int
    file: str
    quant_file: Optional[str] = None
    group_size: Optional[int] = None
    bits: Optional[int] = None
    mode: Optional[QuantizationMode] = None

    def __post_init__(self):
        if self.mode is not None and not isinstance(self.mode, QuantizationMode):
            self.mode = _parse_mode(self.mode)

    @property
    def payload_file(self) -> str:
        """Archive to read the quantized codes from."""
        return self.quant_file or self.file

    def effective_spec(self, defaults: QuantizationSpec) -> QuantizationSpec:
        """Resolve each field as ``override if set else manifest default``."""
        return QuantizationSpec(
            group_size=self.group_size if self.group_size is not None else defaults.group_size,
            bits=self.bits if self.bits is not None else defaults.bits,
            mode=self.mode if self.mode is not None else defaults.mode,
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LayerQuantEntry:
        if not isinstance(raw, dict):
            raise ValueError(f"Layer entry must be an object, got {raw!r}")
        missing = [k for k in ("name", "shape", "in_dim", "out_dim", "file") if k not in raw]
        if missing:
            raise ValueError(
                f"Layer entry {raw.get('name', '<unnamed>')!r} is missing: "
                f"{', '.join(missing)}"
            )
        if not isinstance(raw["shape"], list):
            raise ValueError(f"Layer {raw['name']!r}: shape must be a list, got {raw['shape']!r}")
        try:
            return cls(
                name=raw["name"],
                shape=[int(d) for d in raw["shape"]],
                in_dim=int(raw["in_dim"]),
                out_dim=int(raw["out_dim"]),
                file=raw["file"],
                quant_file=raw.get("quant_file"),
                group_size=raw.get("group_size"),
                bits=raw.get("bits"),
                mode=raw.get("mode"),
            )
        except TypeError as e:
            raise ValueError(f"Layer {raw['name']!r}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "shape": list(self.shape),
            "in_dim": self.in_dim,
            "out_dim": self.out_dim,
            "file": self.file,
        }
        if self.quant_file is not None:
            data["quant_file"] = self.quant_file
        if self.group_size is not None:
            data["group_size"] = self.group_size
        if self.bits is not None:
            data["bits"] = self.bits
        if self.mode is not None:
            data["mode"] = _parse_mode(self.mode).value
        return data


@dataclass
class QuantizationManifest:
    """
    The ``quantization.json`` side-car of a quantized model directory.
    """
    group_size: int = 32
    bits: int = 8
    mode: QuantizationMode = QuantizationMode.AFFINE
    layers: list[LayerQuantEntry] = field(default_factory=list)
    model_id: Optional[str] = None
    revision: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.mode, QuantizationMode):
            self.mode = _parse_mode(self.mode)

    @property
    def default_spec(self) -> QuantizationSpec:
        return QuantizationSpec(group_size=self.group_size, bits=self.bits, mode=self.mode)

    def layer(self, name: str) -> Optional[LayerQuantEntry]:
        for entry in self.layers:
            if entry.name == name:
                return entry
        return None

    def layer_names(self) -> list[str]:
        return [entry.name for entry in self.layers]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QuantizationManifest:
        spec = QuantizationSpec.from_dict(raw)
        layers = raw.get("layers", [])
        if not isinstance(layers, list):
            raise ValueError(f"Manifest layers must be a list, got {layers!r}")
        return cls(
            group_size=spec.group_size,
            bits=spec.bits,
            mode=spec.mode,
            layers=[LayerQuantEntry.from_dict(layer) for layer in layers],
            model_id=raw.get("model_id"),
            revision=raw.get("revision"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.model_id is not None:
            data["model_id"] = self.model_id
        if self.revision is not None:
            data["revision"] = self.revision
        data.update(self.default_spec.to_dict())
        data["layers"] = [entry.to_dict() for entry in self.layers]
        return data

    @classmethod
    def load(cls, path: Union[str, Path]) -> QuantizationManifest:
        """
        Load a manifest from a ``quantization.json`` file or its directory.

        Raises
        ------
        FileNotFoundError
            If the manifest does not exist.
        ValueError
            If the file is not valid JSON or misses required layer fields.
        """
        path = Path(path)
        if path.is_dir():
            path = path / MANIFEST_FILENAME
        if not path.exists():
            raise FileNotFoundError(f"Quantization manifest not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Malformed quantization manifest {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ValueError(f"Quantization manifest must be a JSON object: {path}")

        manifest = cls.from_dict(raw)
        logger.debug(f"Loaded manifest {path}: {len(manifest.layers)} layers")
        return manifest

    def save(self, path: Union[str, Path]) -> Path:
        """Write the manifest; ``path`` may be a directory or a file path."""
        path = Path(path)
        if path.is_dir():
            path = path / MANIFEST_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Quantization manifest saved to {path}")
        return path
