"""
WeightForge Error Taxonomy
===========================
Every failure the core can report, grouped by the subsystem that raises it.

Each exception keeps the offending path, tensor name or numeric value as an
attribute so callers can build their own messages, and formats a readable
default message for logs.

Families:
    - ArchiveError       — safetensors archive structure and tensor lookup
    - QuantizationError  — codec parameters and the offline quantizer
    - LoRAError          — adapter loading and merging (also shape-mismatched binds)

Usage:
    >>> try:
    ...     archive = SafeTensorsArchive("model.safetensors")
    ... except ArchiveError as e:
    ...     logger.error(f"Cannot read archive: {e}")
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


class WeightForgeError(Exception):
    """Base class for all WeightForge errors."""


# =============================================================================
# Archive Errors
# =============================================================================

class ArchiveError(WeightForgeError):
    """The archive (or one of its tensors) cannot be read."""


class FileTooSmall(ArchiveError):
    def __init__(self, path: PathLike):
        self.path = Path(path)
        super().__init__(
            f"File too small to contain a header length field: {self.path}"
        )


class InvalidHeaderLength(ArchiveError):
    def __init__(self, path: PathLike):
        self.path = Path(path)
        super().__init__(f"Header length exceeds file size: {self.path}")


class MalformedHeader(ArchiveError):
    def __init__(self, path: PathLike, reason: str = ""):
        self.path = Path(path)
        self.reason = reason
        message = f"Malformed archive header: {self.path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class TensorMetadataMissing(ArchiveError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tensor '{name}' is missing dtype, shape or data_offsets")


class UnsupportedDType(ArchiveError):
    def __init__(self, dtype: str):
        self.dtype = dtype
        super().__init__(f"Unsupported dtype: {dtype}")


class InvalidOffsets(ArchiveError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid data_offsets for tensor '{name}'")


class InvalidShape(ArchiveError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid shape for tensor '{name}'")


class TensorNotFound(ArchiveError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tensor not found: {name}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


# =============================================================================
# Quantization Errors
# =============================================================================

class QuantizationError(WeightForgeError):
    """Unsupported quantization parameters or a failed quantization run."""


class InvalidGroupSize(QuantizationError):
    def __init__(self, group_size: int):
        self.group_size = group_size
        super().__init__(
            f"Invalid group size {group_size}. Supported: 32, 64, 128"
        )


class InvalidBits(QuantizationError):
    def __init__(self, bits: int):
        self.bits = bits
        super().__init__(f"Invalid bits {bits}. Supported: 4, 8")


class NoSafetensorsFound(QuantizationError):
    def __init__(self, directory: PathLike):
        self.directory = Path(directory)
        super().__init__(f"No .safetensors files found in {self.directory}")


class OutputDirectoryCreationFailed(QuantizationError):
    def __init__(self, directory: PathLike):
        self.directory = Path(directory)
        super().__init__(f"Failed to create output directory: {self.directory}")


class QuantizationFailed(QuantizationError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Quantization failed: {reason}")


# =============================================================================
# LoRA Errors
# =============================================================================

class LoRAError(WeightForgeError):
    """LoRA weights could not be loaded or applied."""


class DirectoryNotFound(LoRAError):
    def __init__(self, path: PathLike):
        self.path = str(path)
        super().__init__(f"LoRA directory not found: {self.path}")


class WeightsNotFound(LoRAError):
    def __init__(self, path: PathLike):
        self.path = str(path)
        super().__init__(f"No LoRA weights (.safetensors) found in: {self.path}")


class ApplicationFailed(LoRAError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to apply weights: {reason}")
