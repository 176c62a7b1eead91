"""
weightforge.quantization — Group Quantization
==============================================
Block-wise weight quantization: the codec, its declarative manifest, and
the offline tool that quantizes whole model directories.

Components:
    - spec.py       — QuantizationSpec, LayerQuantEntry, QuantizationManifest
    - codec.py      — quantize / dequantize (affine and mxfp4)
    - quantizer.py  — ModelQuantizer, has_quantization, name transforms

Information Flow:
    full-precision archives
        → ModelQuantizer.plan() → QuantizationManifest
        → quantize() per layer
        → quantized archives + quantization.json
        → (at load time) WeightBinder → dequantize() → model
"""

from weightforge.quantization.spec import (
    MANIFEST_FILENAME,
    SUPPORTED_BITS,
    SUPPORTED_GROUP_SIZES,
    LayerQuantEntry,
    QuantizationManifest,
    QuantizationMode,
    QuantizationSpec,
)
from weightforge.quantization.codec import (
    QuantizedTensor,
    dequantize,
    dequantize_codes,
    quantize,
)
from weightforge.quantization.quantizer import (
    ModelQuantizer,
    has_quantization,
    text_encoder_tensor_name,
    transformer_tensor_name,
)
