"""
weightforge.model — Weight-Graph Binding
=========================================
Everything that puts tensors into a constructed ``nn.Module``.

    ┌──────────────────────────────────────────────────────────┐
    │                     ComponentLoader                      │
    │                                                          │
    │  archives ──► WeightBinder ──► ParameterRegistry ──► module
    │                   │                                      │
    │                   └─ manifest layers: dequantize, or     │
    │                      swap in QuantizedLinear (native)    │
    └──────────────────────────────────────────────────────────┘

Components:
    - registry.py          — dotted path → parameter slot index
    - quantized_linear.py  — nn.Linear replacement holding packed codes
    - binder.py            — WeightBinder, BindReport
    - loader.py            — ComponentLoader (import it from
                             ``weightforge.model.loader``; it depends on
                             ``weightforge.lora``, which depends on this
                             package)
"""

from weightforge.model.registry import ParameterRegistry, ParameterSlot
from weightforge.model.quantized_linear import QuantizedLinear
from weightforge.model.binder import BindReport, WeightBinder
