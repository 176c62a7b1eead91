"""
weightforge.lora — Low-Rank Adapters
=====================================
Loading LoRA archives under foreign naming conventions and merging their
deltas into a bound model.

Components:
    - loader.py  — remap_weight_key, LoRALoader, LoRAWeights
    - merge.py   — LoRAMerger (all-or-nothing delta commit)

Information Flow:
    lora.safetensors
        → LoRALoader.load() (remapped keys)
        → LoRAMerger.compute_deltas() (Δ = B @ A * strength * alpha / rank)
        → LoRAMerger.apply() → model weights
"""

from weightforge.lora.loader import LoRALoader, LoRAWeights, remap_weight_key
from weightforge.lora.merge import LoRAMerger, LoRAPair
