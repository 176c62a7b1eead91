"""
WeightForge Configuration System
==================================
Centralized configuration for loading, quantizing and LoRA-merging model
weights, using Python dataclasses. Every knob the core reads lives here.

Two kinds of configuration:

    1. WeightForge's own settings (YAML, read and written):
        - LoaderConfig        — working dtype, lazy headers, native quantized layers
        - QuantizationConfig  — default group size / bits / mode
        - LoRAConfig          — adapter path, strength, local cache root
        → combined in WeightForgeConfig

    2. Model config files shipped next to the weights (JSON, read only):
        - TransformerConfig, VAEConfig, SchedulerConfig, TextEncoderConfig
       These belong to the model-construction code; WeightForge only decodes
       them, e.g. to derive the VAE's spatial downscale factor.

Usage:
    # Load from YAML file:
    >>> config = WeightForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = WeightForgeConfig(
    ...     loader=LoaderConfig(dtype="bfloat16"),
    ...     quantization=QuantizationConfig(group_size=64, bits=4),
    ... )

    # Model configs:
    >>> vae = VAEConfig.from_json("models/zimage/vae/config.json")
    >>> vae.vae_scale_factor      # 8 for four down blocks
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal, Optional

import torch
import yaml

from weightforge.archive.dtypes import parse_torch_dtype
from weightforge.quantization.spec import (
    SUPPORTED_BITS,
    SUPPORTED_GROUP_SIZES,
    QuantizationSpec,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Loader Configuration
# =============================================================================

@dataclass
class LoaderConfig:
    """
    How tensors are read and bound into a model.

    Parameters
    ----------
    dtype : str
        Working precision of the model. Full-precision tensors are converted
        to it before binding; dequantized layers too.
        Options: "float32", "float16", "bfloat16".

    lazy_headers : bool
        Validate each tensor's header entry on first access instead of on
        open. A single corrupt entry then only breaks that tensor.

    native_quantized : bool
        Keep manifest-listed layers quantized in memory (QuantizedLinear)
        instead of dequantizing them once at load time. Saves memory at the
        cost of dequantizing on every forward call.
    """
    dtype: Literal["float32", "float16", "bfloat16"] = "bfloat16"
    lazy_headers: bool = False
    native_quantized: bool = False

    def validate(self) -> None:
        """Validate loader parameters."""
        if self.dtype not in ("float32", "float16", "bfloat16"):
            raise ValueError(
                f"Unknown dtype: '{self.dtype}'. "
                f"Choose from: float32, float16, bfloat16"
            )

    def resolve_dtype(self) -> torch.dtype:
        """The working precision as a torch dtype."""
        return parse_torch_dtype(self.dtype)


# =============================================================================
# Quantization Configuration
# =============================================================================

@dataclass
class QuantizationConfig:
    """
    Defaults for the quantization codec and the offline quantizer.

    Parameters
    ----------
    group_size : int
        Elements per quantization group. One of 32, 64, 128.
        Smaller groups follow the data more closely but store more
        parameters.

    bits : int
        Bits per code. One of 4, 8.

    mode : str
        "affine" (scale + bias per group) or "mxfp4" (shared exponent,
        4-bit floating codes; requires bits=4).
    """
    group_size: int = 32
    bits: int = 8
    mode: Literal["affine", "mxfp4"] = "affine"

    def validate(self) -> None:
        """Validate quantization parameters."""
        if self.group_size not in SUPPORTED_GROUP_SIZES:
            raise ValueError(
                f"group_size must be one of {SUPPORTED_GROUP_SIZES}, "
                f"got {self.group_size}"
            )
        if self.bits not in SUPPORTED_BITS:
            raise ValueError(f"bits must be one of {SUPPORTED_BITS}, got {self.bits}")
        if self.mode not in ("affine", "mxfp4"):
            raise ValueError(
                f"Unknown mode: '{self.mode}'. Choose from: affine, mxfp4"
            )
        if self.mode == "mxfp4" and self.bits != 4:
            raise ValueError(f"mxfp4 requires bits=4, got {self.bits}")

    def to_spec(self) -> QuantizationSpec:
        return QuantizationSpec(group_size=self.group_size, bits=self.bits, mode=self.mode)


# =============================================================================
# LoRA Configuration
# =============================================================================

@dataclass
class LoRAConfig:
    """
    Optional low-rank adapter applied after the base weights are bound.

    Parameters
    ----------
    path : str or None
        LoRA archive, directory, or model id resolved under cache_dir.
        None = no LoRA (the merge engine is never invoked).

    scale : float
        LoRA strength. Multiplies every delta, on top of the adapter's own
        alpha / rank ratio. 0.0 leaves the base weights unchanged.

    cache_dir : str or None
        Local directory where model ids ("user/name") are looked up as
        sub-directories. Nothing is ever downloaded.
    """
    path: Optional[str] = None
    scale: float = 1.0
    cache_dir: Optional[str] = None

    def validate(self) -> None:
        """Validate LoRA parameters."""
        if self.path is not None and not self.path.strip():
            raise ValueError("LoRA path must not be empty; use null for no LoRA")


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class WeightForgeConfig:
    """
    Master configuration combining all sub-configurations.

    Usage:
        >>> config = WeightForgeConfig.from_yaml("configs/default.yaml")
        >>> config = WeightForgeConfig()
        >>> config.validate()
        >>> config.to_yaml("configs/my_setup.yaml")
    """
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    quantization: QuantizationConfig = field(default_factory=QuantizationConfig)
    lora: LoRAConfig = field(default_factory=LoRAConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations.

        Raises
        ------
        ValueError
            If any parameter is invalid.
        """
        self.loader.validate()
        self.quantization.validate()
        self.lora.validate()

        logger.info(
            f"Config validated: dtype={self.loader.dtype}, "
            f"quantization={self.quantization.mode}/{self.quantization.bits}-bit, "
            f"lora={'on' if self.lora.path else 'off'}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> WeightForgeConfig:
        """
        Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        yaml.YAMLError
            If the YAML file is malformed.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Config file is empty: {path}")

        config = cls(
            loader=LoaderConfig(**raw.get("loader", {})),
            quantization=QuantizationConfig(**raw.get("quantization", {})),
            lora=LoRAConfig(**raw.get("lora", {})),
        )

        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                asdict(self),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    @classmethod
    def for_smoke_test(cls) -> WeightForgeConfig:
        """
        Minimal configuration for quick end-to-end checks on CPU:
        float32 everywhere, smallest groups, 8-bit affine.
        """
        return cls(
            loader=LoaderConfig(dtype="float32", lazy_headers=False, native_quantized=False),
            quantization=QuantizationConfig(group_size=32, bits=8, mode="affine"),
            lora=LoRAConfig(path=None, scale=1.0),
        )

    def __repr__(self) -> str:
        lines = [
            "WeightForgeConfig(",
            f"  Loader:       dtype={self.loader.dtype}, "
            f"lazy_headers={self.loader.lazy_headers}, "
            f"native_quantized={self.loader.native_quantized}",
            f"  Quantization: {self.quantization.mode}, {self.quantization.bits}-bit, "
            f"group_size={self.quantization.group_size}",
            f"  LoRA:         {self.lora.path or 'none'} (scale={self.lora.scale})",
            ")",
        ]
        return "\n".join(lines)


# =============================================================================
# Model Config Files (read only)
# =============================================================================

class _JSONConfig:
    """
    Shared decoding for the JSON config files shipped with a model.

    Unknown keys (``_class_name``, ``_diffusers_version``, ...) are ignored;
    missing required keys raise ValueError.
    """

    @classmethod
    def from_dict(cls, raw: dict[str, Any]):
        if not isinstance(raw, dict):
            raise ValueError(f"{cls.__name__} expects a JSON object, got {type(raw).__name__}")

        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in raw.items() if k in known}
        try:
            config = cls(**kwargs)
        except TypeError as e:
            raise ValueError(f"Invalid {cls.__name__}: {e}") from e
        config.validate()
        return config

    @classmethod
    def from_json(cls, path: str | Path):
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Malformed config file {path}: {e}") from e
        return cls.from_dict(raw)

    def validate(self) -> None:
        pass


@dataclass
class TransformerConfig(_JSONConfig):
    """Diffusion transformer hyperparameters (``transformer/config.json``)."""
    in_channels: int
    dim: int
    n_layers: int
    n_refiner_layers: int
    n_heads: int
    n_kv_heads: int
    norm_eps: float
    qk_norm: bool
    cap_feat_dim: int
    rope_theta: float = 256.0
    t_scale: float = 1000.0
    axes_dims: list[int] = field(default_factory=lambda: [32, 48, 48])
    axes_lens: list[int] = field(default_factory=lambda: [1024, 512, 512])

    def validate(self) -> None:
        if self.dim % self.n_heads != 0:
            raise ValueError(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )


@dataclass
class VAEConfig(_JSONConfig):
    """
    Autoencoder hyperparameters (``vae/config.json``).

    Each down block after the first halves the spatial resolution, so the
    latent is ``2 ** (len(block_out_channels) - 1)`` times smaller than the
    image along each side.
    """
    block_out_channels: list[int]
    latent_channels: int
    scaling_factor: float
    shift_factor: float
    sample_size: int = 1024
    in_channels: int = 3
    out_channels: int = 3
    layers_per_block: int = 2
    norm_num_groups: int = 32
    mid_block_add_attention: bool = True
    use_post_quant_conv: bool = False
    use_quant_conv: bool = False

    def validate(self) -> None:
        if not isinstance(self.block_out_channels, list) or not self.block_out_channels:
            raise ValueError(
                f"block_out_channels must be a non-empty list, "
                f"got {self.block_out_channels!r}"
            )

    @property
    def vae_scale_factor(self) -> int:
        """Spatial downscale factor between image and latent."""
        return 2 ** (len(self.block_out_channels) - 1)

    @property
    def latent_divisor(self) -> int:
        """Image sides must be multiples of this."""
        return self.vae_scale_factor


@dataclass
class SchedulerConfig(_JSONConfig):
    """Flow-matching scheduler settings (``scheduler/scheduler_config.json``)."""
    num_train_timesteps: int
    shift: float
    use_dynamic_shifting: bool
    base_shift: Optional[float] = None
    max_shift: Optional[float] = None
    base_image_seq_len: Optional[int] = None
    max_image_seq_len: Optional[int] = None


@dataclass
class TextEncoderConfig(_JSONConfig):
    """Text encoder hyperparameters (``text_encoder/config.json``)."""
    hidden_size: int
    num_hidden_layers: int
    num_attention_heads: int
    num_key_value_heads: int
    intermediate_size: int
    max_position_embeddings: int
    rope_theta: float
    vocab_size: int
    rms_norm_eps: float
    head_dim: int
