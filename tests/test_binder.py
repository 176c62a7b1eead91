#!/usr/bin/env python3
"""
Tests for the parameter registry, QuantizedLinear, the weight binder and
the component loader.

Run:
    python -m pytest tests/test_binder.py -v --tb=short
"""

import sys
from pathlib import Path

import pytest
import torch
import torch.nn as nn
import torch.nn.functional as F
from safetensors.torch import save_file

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


class FeedForward(nn.Module):
    def __init__(self, dim: int = 64, hidden: int = 128):
        super().__init__()
        self.linear1 = nn.Linear(dim, hidden)
        self.linear2 = nn.Linear(hidden, dim)

    def forward(self, x):
        return self.linear2(F.gelu(self.linear1(x)))


class TinyBlock(nn.Module):
    """A transformer-shaped toy: attention projection, norm, feed-forward."""

    def __init__(self, dim: int = 64):
        super().__init__()
        self.attn = nn.Linear(dim, dim)
        self.norm = nn.LayerNorm(dim)
        self.ff = FeedForward(dim)
        self.register_buffer("step", torch.zeros(1))
        self.register_buffer("rope_cache", torch.randn(4, dim), persistent=False)

    def forward(self, x):
        return self.ff(self.norm(self.attn(x)))


def state_to_archive(module: nn.Module, path: Path, prefix: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tensors = {prefix + k: v.detach().clone().contiguous() for k, v in module.state_dict().items()}
    save_file(tensors, str(path))
    return path


# =============================================================================
# Registry Tests
# =============================================================================

class TestParameterRegistry:
    """Tests for the dotted-path index."""

    def test_matches_state_dict(self):
        from weightforge.model import ParameterRegistry
        model = TinyBlock()
        registry = ParameterRegistry.from_module(model)
        assert set(registry.names()) == set(model.state_dict())
        assert "rope_cache" not in registry
        assert registry.get("step").is_buffer

    def test_assign_in_place(self):
        from weightforge.model import ParameterRegistry
        model = TinyBlock()
        registry = ParameterRegistry(model)
        ptr = model.attn.weight.data_ptr()
        registry.assign("attn.weight", torch.ones(64, 64))
        assert model.attn.weight.data_ptr() == ptr
        assert torch.equal(model.attn.weight, torch.ones(64, 64))

    def test_assign_changes_dtype(self):
        from weightforge.model import ParameterRegistry
        model = TinyBlock()
        registry = ParameterRegistry(model)
        registry.assign("norm.weight", torch.ones(64, dtype=torch.bfloat16))
        assert model.norm.weight.dtype == torch.bfloat16
        assert isinstance(model.norm.weight, nn.Parameter)

    def test_missing_path(self):
        from weightforge.model import ParameterRegistry
        registry = ParameterRegistry(TinyBlock())
        assert registry.get("nope.weight") is None
        with pytest.raises(KeyError):
            registry.tensor("nope.weight")
        assert registry.module_at("nope") is None

    def test_replace_module(self):
        from weightforge.model import ParameterRegistry
        model = TinyBlock()
        registry = ParameterRegistry(model)
        registry.replace_module("ff.linear1", nn.Linear(64, 128, bias=False))
        assert "ff.linear1.bias" not in registry
        assert registry.module_at("ff.linear1").bias is None


# =============================================================================
# QuantizedLinear Tests
# =============================================================================

class TestQuantizedLinear:
    """Tests for the natively quantized linear layer."""

    def test_forward_matches_dequantized(self):
        from weightforge.model import QuantizedLinear
        from weightforge.quantization import QuantizationSpec
        torch.manual_seed(0)
        linear = nn.Linear(64, 32)
        layer = QuantizedLinear.from_linear(linear, QuantizationSpec(group_size=32, bits=4))

        x = torch.randn(3, 64)
        expected = F.linear(x, layer.dequantized_weight(), linear.bias)
        assert torch.allclose(layer(x), expected, atol=1e-6)
        # Close to the original layer as well
        assert torch.allclose(layer(x), linear(x), atol=0.5)

    def test_state_dict_layout(self):
        from weightforge.model import QuantizedLinear
        from weightforge.quantization import QuantizationSpec
        affine = QuantizedLinear(64, 16, spec=QuantizationSpec(group_size=32, bits=8))
        assert set(affine.state_dict()) == {"weight", "scales", "biases", "bias"}
        assert affine.weight.shape == (16, 64)

        mx = QuantizedLinear(64, 16, bias=False, spec=QuantizationSpec(32, 4, "mxfp4"))
        assert set(mx.state_dict()) == {"weight", "scales"}
        assert mx.weight.shape == (16, 32)
        assert mx.scales.dtype == torch.uint8

    def test_in_features_must_divide(self):
        from weightforge.errors import QuantizationFailed
        from weightforge.model import QuantizedLinear
        with pytest.raises(QuantizationFailed):
            QuantizedLinear(48, 16)

    def test_load_quantized_spec_mismatch(self):
        from weightforge.errors import QuantizationFailed
        from weightforge.model import QuantizedLinear
        from weightforge.quantization import QuantizationSpec, quantize
        layer = QuantizedLinear(64, 16, spec=QuantizationSpec(bits=8))
        with pytest.raises(QuantizationFailed, match="spec"):
            layer.load_quantized(quantize(torch.randn(16, 64), QuantizationSpec(bits=4)))


# =============================================================================
# Binder Tests
# =============================================================================

class TestWeightBinder:
    """Tests for binding flat tensor maps into a module."""

    def test_unknown_name_is_noop(self):
        from weightforge.model import WeightBinder
        binder = WeightBinder(TinyBlock())
        assert binder.bind("decoder.conv.weight", torch.ones(3)) is False

    def test_shape_mismatch(self):
        from weightforge.errors import ApplicationFailed
        from weightforge.model import WeightBinder
        binder = WeightBinder(TinyBlock())
        with pytest.raises(ApplicationFailed, match="attn.weight"):
            binder.bind("attn.weight", torch.ones(64, 32))

    def test_dtype_coercion(self):
        from weightforge.model import WeightBinder
        model = TinyBlock()
        binder = WeightBinder(model, dtype=torch.bfloat16)
        assert binder.bind("attn.weight", torch.ones(64, 64, dtype=torch.float32))
        assert model.attn.weight.dtype == torch.bfloat16

    def test_bind_is_idempotent(self):
        from weightforge.model import WeightBinder
        model = TinyBlock()
        binder = WeightBinder(model)
        value = torch.randn(64, 64)
        binder.bind("attn.weight", value)
        first = model.attn.weight.detach().clone()
        binder.bind("attn.weight", value)
        assert torch.equal(model.attn.weight, first)

    def test_bind_all_report(self):
        from weightforge.model import WeightBinder
        source = TinyBlock()
        target = TinyBlock()
        tensors = dict(source.state_dict())
        tensors["extra.weight"] = torch.zeros(2)

        report = WeightBinder(target).bind_all(tensors)
        assert report.skipped == ["extra.weight"]
        assert len(report.bound) == len(source.state_dict())
        for name, value in source.state_dict().items():
            assert torch.equal(target.state_dict()[name], value)

    def test_corrections_are_added(self):
        from weightforge.model import WeightBinder
        model = TinyBlock()
        base = torch.ones(64, 64)
        delta = torch.full((64, 64), 0.5)
        WeightBinder(model).bind_all({"attn.weight": base}, corrections={"attn.weight": delta})
        assert torch.allclose(model.attn.weight, torch.full((64, 64), 1.5))

    def test_orphan_correction_binds_nothing(self):
        from weightforge.errors import ApplicationFailed
        from weightforge.model import WeightBinder
        model = TinyBlock()
        before = model.attn.weight.detach().clone()
        with pytest.raises(ApplicationFailed):
            WeightBinder(model).bind_all(
                {"attn.weight": torch.zeros(64, 64)},
                corrections={"ff.linear1.weight": torch.zeros(128, 64)},
            )
        assert torch.equal(model.attn.weight, before)

    def test_dense_into_quantized_layer(self):
        """A float weight bound onto a QuantizedLinear is re-quantized."""
        from weightforge.model import ParameterRegistry, QuantizedLinear, WeightBinder
        from weightforge.quantization import QuantizationSpec
        model = TinyBlock()
        registry = ParameterRegistry(model)
        registry.replace_module("attn", QuantizedLinear(64, 64, spec=QuantizationSpec()))

        weight = torch.randn(64, 64)
        WeightBinder(model, registry=registry).bind("attn.weight", weight)
        assert model.attn.weight.dtype == torch.uint8
        assert (model.attn.dequantized_weight() - weight).abs().max() < 0.05


# =============================================================================
# Quantized Binding & Component Loading
# =============================================================================

def quantized_model_dir(tmp_path: Path, bits: int = 8, mode: str = "affine"):
    """A full-precision model directory and its quantized copy."""
    from weightforge.quantization import ModelQuantizer, QuantizationSpec
    torch.manual_seed(4)
    source = TinyBlock()
    source.step.fill_(7.0)
    full = tmp_path / "full"
    state_to_archive(source, full / "transformer" / "model.safetensors")
    quantized = tmp_path / "quantized"
    manifest = ModelQuantizer(QuantizationSpec(32, bits, mode)).quantize_directory(full, quantized)
    return source, full, quantized, manifest


class TestQuantizedBinding:
    """Dequantize-at-load and native quantized layers agree."""

    @pytest.mark.parametrize("bits,mode", [(8, "affine"), (4, "affine"), (4, "mxfp4")])
    def test_native_equals_dequantized(self, tmp_path, bits, mode):
        from weightforge.model import QuantizedLinear, WeightBinder
        _, _, quantized, manifest = quantized_model_dir(tmp_path, bits, mode)
        assert set(manifest.layer_names()) == {"attn", "ff.linear1", "ff.linear2"}

        dense = TinyBlock()
        native = TinyBlock()
        WeightBinder(dense).bind_manifest(manifest, quantized)
        report = WeightBinder(native).bind_manifest(manifest, quantized, native=True)
        assert len(report.bound) == 3
        assert isinstance(native.attn, QuantizedLinear)

        for name in ("attn", "ff.linear1", "ff.linear2"):
            dense_weight = dense.get_submodule(name).weight
            native_weight = native.get_submodule(name).dequantized_weight()
            assert torch.equal(dense_weight, native_weight)

    def test_bind_quantized_from_directory(self, tmp_path):
        from weightforge.model import WeightBinder
        source, _, quantized, manifest = quantized_model_dir(tmp_path)
        model = TinyBlock()
        entry = manifest.layer("attn")
        assert WeightBinder(model).bind_quantized(entry, quantized, manifest.default_spec)
        assert (model.attn.weight - source.attn.weight).abs().max() < 0.05

    def test_missing_layer_is_skipped(self, tmp_path):
        from weightforge.model import WeightBinder
        from weightforge.quantization import LayerQuantEntry
        _, _, quantized, manifest = quantized_model_dir(tmp_path)
        manifest.layers.append(LayerQuantEntry(
            name="decoder.proj", shape=[64, 64], in_dim=64, out_dim=64,
            file="transformer/model.safetensors",
        ))
        report = WeightBinder(TinyBlock()).bind_manifest(manifest, quantized)
        assert report.skipped == ["decoder.proj"]

    def test_native_layer_keeps_device_without_bias(self, tmp_path):
        """A bias-free linear's replacement lands on the linear's device."""
        from weightforge.model import QuantizedLinear, WeightBinder
        _, _, quantized, manifest = quantized_model_dir(tmp_path)
        model = nn.Module()
        model.attn = nn.Linear(64, 64, bias=False, device="meta")

        entry = manifest.layer("attn")
        assert WeightBinder(model).bind_quantized(
            entry, quantized, manifest.default_spec, native=True
        )
        assert isinstance(model.attn, QuantizedLinear)
        assert model.attn.bias is None
        assert model.attn.weight.device.type == "meta"
        assert model.attn.scales.device.type == "meta"


class TestComponentLoader:
    """End-to-end loading of component directories."""

    def _config(self, native: bool = False):
        from weightforge.config import LoaderConfig, WeightForgeConfig
        config = WeightForgeConfig.for_smoke_test()
        config.loader = LoaderConfig(dtype="float32", native_quantized=native)
        return config

    def test_full_precision(self, tmp_path):
        from weightforge.model.loader import ComponentLoader
        source, full, _, _ = quantized_model_dir(tmp_path)
        model = TinyBlock()

        results = ComponentLoader(self._config()).load_into(model, full / "transformer")
        assert results["quantized"] is False
        assert results["n_skipped"] == 0
        for name, value in source.state_dict().items():
            assert torch.equal(model.state_dict()[name], value)

    @pytest.mark.parametrize("native", [False, True])
    def test_quantized_directory(self, tmp_path, native):
        from weightforge.model.loader import ComponentLoader
        source, _, quantized, _ = quantized_model_dir(tmp_path)
        model = TinyBlock()

        results = ComponentLoader(self._config(native)).load_into(model, quantized / "transformer")
        assert results["quantized"] is True
        assert results["n_quantized_layers"] == 3
        assert torch.equal(model.norm.weight, source.norm.weight)
        assert model.step.item() == 7.0

        x = torch.randn(2, 64)
        assert torch.allclose(model(x), source(x), atol=0.1)

    def test_text_encoder_names(self, tmp_path):
        from weightforge.model.loader import ComponentLoader
        from weightforge.quantization import text_encoder_tensor_name

        class Encoder(nn.Module):
            def __init__(self):
                super().__init__()
                self.model = TinyBlock()

        source = TinyBlock()
        state_to_archive(source, tmp_path / "text_encoder" / "model.safetensors", prefix="encoder.")
        encoder = Encoder()
        results = ComponentLoader(self._config()).load_into(
            encoder, tmp_path / "text_encoder", name_transform=text_encoder_tensor_name
        )
        assert results["n_skipped"] == 0
        assert torch.equal(encoder.model.attn.weight, source.attn.weight)

    def test_lora_is_merged(self, tmp_path):
        from weightforge.model.loader import ComponentLoader
        source, full, _, _ = quantized_model_dir(tmp_path)
        down = torch.randn(4, 64)
        up = torch.randn(64, 4)
        (tmp_path / "lora").mkdir()
        save_file(
            {"lora_unet_attn.lora_A.weight": down, "lora_unet_attn.lora_B.weight": up},
            str(tmp_path / "lora" / "adapter.safetensors"),
        )
        model = TinyBlock()

        results = ComponentLoader(self._config()).load_into(
            model, full / "transformer", lora_path=str(tmp_path / "lora"), lora_scale=0.5
        )
        assert results["n_lora_deltas"] == 1
        expected = source.attn.weight + 0.5 * (up @ down)
        assert torch.allclose(model.attn.weight, expected, atol=1e-5)

    def test_missing_directory(self, tmp_path):
        from weightforge.model.loader import ComponentLoader
        with pytest.raises(FileNotFoundError):
            ComponentLoader(self._config()).load_into(TinyBlock(), tmp_path / "nope")

    def test_empty_directory(self, tmp_path):
        from weightforge.errors import NoSafetensorsFound
        from weightforge.model.loader import ComponentLoader
        with pytest.raises(NoSafetensorsFound):
            ComponentLoader(self._config()).load_into(TinyBlock(), tmp_path)
