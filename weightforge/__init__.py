"""
WeightForge
===========
Loading, quantizing and adapting the weights of diffusion models stored as
safetensors archives.

This package provides:
    1. A byte-exact safetensors reader with typed errors for every defect
    2. Group-wise weight quantization (affine 4/8-bit and mxfp4) with a
       JSON manifest and an offline quantizer for whole model directories
    3. A binder that puts tensors (dense or quantized) into a constructed
       PyTorch module
    4. A LoRA engine that remaps adapter keys and merges their deltas

Quick Start:
    >>> from weightforge.config import WeightForgeConfig
    >>> from weightforge.model.loader import ComponentLoader
    >>> config = WeightForgeConfig.from_yaml("configs/default.yaml")
    >>> ComponentLoader(config).load_into(transformer, "models/zimage/transformer")

Subpackages:
    - weightforge.archive       — Safetensors reading and writing
    - weightforge.quantization  — Codec, manifest and offline quantizer
    - weightforge.model         — Parameter registry, binder, component loader
    - weightforge.lora          — Key remapping and delta merging
"""

__version__ = "0.1.0"
