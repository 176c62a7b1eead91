#!/usr/bin/env python3
"""
Tests for safetensors archive reading and writing.

Run:
    python -m pytest tests/test_archive.py -v --tb=short
"""

import json
import struct
import sys
from pathlib import Path

import pytest
import torch
from safetensors.torch import save_file

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def write_raw(path: Path, header, data: bytes = b"") -> Path:
    """Write an archive byte by byte: length prefix, JSON header, data."""
    header_bytes = header if isinstance(header, bytes) else json.dumps(header).encode("utf-8")
    path.write_bytes(struct.pack("<Q", len(header_bytes)) + header_bytes + data)
    return path


# =============================================================================
# Reading Valid Archives
# =============================================================================

class TestReadArchive:
    """Tests for reading well-formed archives."""

    def test_round_trip_float_tensors(self, tmp_path):
        """Tensors saved by safetensors read back bit-exactly."""
        from weightforge.archive import SafeTensorsArchive
        tensors = {
            "a.weight": torch.randn(4, 8),
            "b.bias": torch.randn(8).to(torch.float16),
            "c.weight": torch.randn(3, 5).to(torch.bfloat16),
        }
        path = tmp_path / "model.safetensors"
        save_file(tensors, str(path))

        with SafeTensorsArchive(path) as archive:
            assert sorted(archive.tensor_names()) == sorted(tensors)
            for name, expected in tensors.items():
                loaded = archive.tensor(name)
                assert loaded.dtype == expected.dtype
                assert loaded.shape == expected.shape
                assert torch.equal(loaded, expected)

    def test_integer_and_bool_tensors(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        tensors = {
            "codes": torch.arange(16, dtype=torch.uint8).reshape(2, 8),
            "ids": torch.tensor([-3, 0, 7], dtype=torch.int64),
            "mask": torch.tensor([True, False, True]),
        }
        path = tmp_path / "ints.safetensors"
        save_file(tensors, str(path))

        with SafeTensorsArchive(path) as archive:
            for name, expected in tensors.items():
                assert torch.equal(archive.tensor(name), expected)

    def test_element_count_matches_shape(self, tmp_path):
        """Every descriptor's element count is the product of its shape."""
        from weightforge.archive import SafeTensorsArchive
        path = tmp_path / "model.safetensors"
        save_file({"x": torch.zeros(2, 3, 4), "s": torch.tensor(1.5)}, str(path))

        with SafeTensorsArchive(path) as archive:
            x = archive.metadata("x")
            assert x.element_count == 24
            assert x.byte_count == 24 * 4
            scalar = archive.metadata("s")
            assert scalar.shape == ()
            assert scalar.element_count == 1
            assert archive.tensor("s").item() == 1.5

    def test_metadata_key_is_not_a_tensor(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        path = tmp_path / "model.safetensors"
        save_file({"w": torch.ones(2)}, str(path), metadata={"format": "pt"})

        with SafeTensorsArchive(path) as archive:
            assert archive.tensor_names() == ["w"]
            assert "__metadata__" not in archive
            assert archive.metadata_dict == {"format": "pt"}

    def test_unknown_name(self, tmp_path):
        """Unknown names: metadata() is None, tensor() raises TensorNotFound."""
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import TensorNotFound
        path = tmp_path / "model.safetensors"
        save_file({"w": torch.ones(2)}, str(path))

        with SafeTensorsArchive(path) as archive:
            assert archive.metadata("missing") is None
            assert not archive.contains("missing")
            with pytest.raises(TensorNotFound) as info:
                archive.tensor("missing")
            assert info.value.name == "missing"
            # Also usable as a KeyError
            with pytest.raises(KeyError):
                archive.tensor("missing")

    def test_dtype_conversion(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        path = tmp_path / "model.safetensors"
        save_file({"w": torch.tensor([1.0, 2.5])}, str(path))

        with SafeTensorsArchive(path) as archive:
            converted = archive.tensor("w", dtype=torch.float16)
        assert converted.dtype == torch.float16
        assert converted.tolist() == [1.0, 2.5]

    def test_tensor_data_is_raw_bytes(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        path = tmp_path / "model.safetensors"
        save_file({"w": torch.tensor([1.0], dtype=torch.float32)}, str(path))

        with SafeTensorsArchive(path) as archive:
            assert archive.tensor_data("w") == struct.pack("<f", 1.0)

    def test_hand_written_archive(self, tmp_path):
        """A minimal archive assembled from raw bytes."""
        from weightforge.archive import SafeTensorsArchive
        data = struct.pack("<4h", 1, -2, 3, -4)
        header = {"t": {"dtype": "I16", "shape": [2, 2], "data_offsets": [0, 8]}}
        path = write_raw(tmp_path / "raw.safetensors", header, data)

        with SafeTensorsArchive(path) as archive:
            assert archive.tensor("t").tolist() == [[1, -2], [3, -4]]

    def test_load_all_tensors(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        path = tmp_path / "model.safetensors"
        save_file({"a": torch.ones(2), "b": torch.zeros(3)}, str(path))

        with SafeTensorsArchive(path) as archive:
            tensors = archive.load_all_tensors()
        assert set(tensors) == {"a", "b"}
        assert tensors["b"].shape == (3,)


# =============================================================================
# Structural Errors
# =============================================================================

class TestArchiveErrors:
    """Every structural defect maps to its own error."""

    @pytest.mark.parametrize("size", [0, 1, 7])
    def test_file_too_small(self, tmp_path, size):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import FileTooSmall
        path = tmp_path / "short.safetensors"
        path.write_bytes(b"\x00" * size)
        with pytest.raises(FileTooSmall):
            SafeTensorsArchive(path)

    def test_header_length_exceeds_file(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import InvalidHeaderLength
        path = tmp_path / "bad.safetensors"
        path.write_bytes(struct.pack("<Q", 1000) + b"{}")
        with pytest.raises(InvalidHeaderLength):
            SafeTensorsArchive(path)

    def test_header_not_json(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import MalformedHeader
        path = write_raw(tmp_path / "bad.safetensors", b"{not json")
        with pytest.raises(MalformedHeader):
            SafeTensorsArchive(path)

    def test_header_not_object(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import MalformedHeader
        path = write_raw(tmp_path / "bad.safetensors", [1, 2, 3])
        with pytest.raises(MalformedHeader):
            SafeTensorsArchive(path)

    def test_missing_descriptor_fields(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import TensorMetadataMissing
        header = {"t": {"dtype": "F32", "shape": [1]}}
        path = write_raw(tmp_path / "bad.safetensors", header, b"\x00" * 4)
        with pytest.raises(TensorMetadataMissing) as info:
            SafeTensorsArchive(path)
        assert info.value.name == "t"

    def test_unsupported_dtype(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import UnsupportedDType
        header = {"t": {"dtype": "F8_E4M3X", "shape": [1], "data_offsets": [0, 1]}}
        path = write_raw(tmp_path / "bad.safetensors", header, b"\x00")
        with pytest.raises(UnsupportedDType) as info:
            SafeTensorsArchive(path)
        assert info.value.dtype == "F8_E4M3X"

    @pytest.mark.parametrize("offsets", [[0, 8], [4, 2], [2, 2], [-1, 4], [0], "0,4"])
    def test_invalid_offsets(self, tmp_path, offsets):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import InvalidOffsets
        header = {"t": {"dtype": "U8", "shape": [4], "data_offsets": offsets}}
        path = write_raw(tmp_path / "bad.safetensors", header, b"\x00" * 4)
        with pytest.raises(InvalidOffsets):
            SafeTensorsArchive(path)

    def test_shape_inconsistent_with_byte_range(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import InvalidShape
        header = {"t": {"dtype": "F32", "shape": [3], "data_offsets": [0, 8]}}
        path = write_raw(tmp_path / "bad.safetensors", header, b"\x00" * 8)
        with pytest.raises(InvalidShape):
            SafeTensorsArchive(path)

    def test_negative_dimension(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import InvalidShape
        header = {"t": {"dtype": "U8", "shape": [-4], "data_offsets": [0, 4]}}
        path = write_raw(tmp_path / "bad.safetensors", header, b"\x00" * 4)
        with pytest.raises(InvalidShape):
            SafeTensorsArchive(path)

    def test_errors_share_a_base_class(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import ArchiveError, WeightForgeError
        path = tmp_path / "short.safetensors"
        path.write_bytes(b"\x01")
        with pytest.raises(ArchiveError):
            SafeTensorsArchive(path)
        assert issubclass(ArchiveError, WeightForgeError)


# =============================================================================
# Lazy Validation
# =============================================================================

class TestLazyValidation:
    """Lazy mode defers per-tensor checks until the tensor is accessed."""

    def _archive_with_one_bad_entry(self, tmp_path) -> Path:
        header = {
            "good": {"dtype": "U8", "shape": [4], "data_offsets": [0, 4]},
            "bad": {"dtype": "U8", "shape": [4], "data_offsets": [4, 100]},
        }
        return write_raw(tmp_path / "mixed.safetensors", header, bytes(range(8)))

    def test_eager_open_fails(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import InvalidOffsets
        with pytest.raises(InvalidOffsets):
            SafeTensorsArchive(self._archive_with_one_bad_entry(tmp_path))

    def test_lazy_open_reads_good_tensors(self, tmp_path):
        from weightforge.archive import open_archive
        from weightforge.errors import InvalidOffsets
        with open_archive(self._archive_with_one_bad_entry(tmp_path), lazy=True) as archive:
            assert archive.tensor("good").tolist() == [0, 1, 2, 3]
            with pytest.raises(InvalidOffsets):
                archive.tensor("bad")

    def test_load_all_stops_at_bad_entry(self, tmp_path):
        from weightforge.archive import open_archive
        from weightforge.errors import InvalidOffsets
        with open_archive(self._archive_with_one_bad_entry(tmp_path), lazy=True) as archive:
            with pytest.raises(InvalidOffsets):
                archive.load_all_tensors()

    def test_structural_checks_still_eager(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive
        from weightforge.errors import MalformedHeader
        path = write_raw(tmp_path / "bad.safetensors", b"\xff\xfe")
        with pytest.raises(MalformedHeader):
            SafeTensorsArchive(path, lazy=True)


# =============================================================================
# Writing & Discovery
# =============================================================================

class TestWriteArchive:
    """Tests for write_archive and find_archives."""

    def test_write_creates_parents(self, tmp_path):
        from weightforge.archive import SafeTensorsArchive, write_archive
        path = write_archive(
            {"w": torch.randn(4, 4).t()},
            tmp_path / "nested" / "dir" / "out.safetensors",
            metadata={"format": "pt", "step": 3},
        )
        assert path.exists()
        with SafeTensorsArchive(path) as archive:
            assert archive.tensor("w").shape == (4, 4)
            assert archive.metadata_dict == {"format": "pt", "step": "3"}

    def test_find_archives_sorted_recursive(self, tmp_path):
        from weightforge.archive import find_archives
        for name in ["b.safetensors", "a.safetensors", "sub/c.safetensors"]:
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            save_file({"x": torch.zeros(1)}, str(path))
        (tmp_path / "config.json").write_text("{}")

        found = [p.relative_to(tmp_path).as_posix() for p in find_archives(tmp_path)]
        assert found == ["a.safetensors", "b.safetensors", "sub/c.safetensors"]

    def test_find_archives_missing_directory(self, tmp_path):
        from weightforge.archive import find_archives
        assert find_archives(tmp_path / "nope") == []


class TestDType:
    """Tests for the dtype table."""

    def test_codes(self):
        from weightforge.archive import DType
        assert DType.from_code("BF16").torch_dtype == torch.bfloat16
        assert DType.from_code("F16").size == 2
        assert DType.from_code("I64").size == 8
        assert DType.from_code("F4") is None

    def test_parse_torch_dtype(self):
        from weightforge.archive import parse_torch_dtype
        assert parse_torch_dtype("bfloat16") == torch.bfloat16
        assert parse_torch_dtype("F32") == torch.float32
        with pytest.raises(ValueError):
            parse_torch_dtype("float128")
