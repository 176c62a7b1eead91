"""
Scalar types stored in safetensors archives.

Each member carries the header code string, the element size in bytes, the
matching ``torch.dtype`` and the little-endian numpy dtype used to decode raw
bytes. ``bfloat16`` has no numpy equivalent and torch only partially
supports the wide unsigned types, so those decode through the signed integer
of the same width and are bit-cast afterwards. The cast only recovers the
storage type; it is not a numeric conversion.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

import torch


class DType(Enum):
    # (header code, byte size, torch dtype, numpy decode dtype)
    F64 = ("F64", 8, torch.float64, "<f8")
    F32 = ("F32", 4, torch.float32, "<f4")
    F16 = ("F16", 2, torch.float16, "<f2")
    BF16 = ("BF16", 2, torch.bfloat16, "<i2")
    I64 = ("I64", 8, torch.int64, "<i8")
    I32 = ("I32", 4, torch.int32, "<i4")
    I16 = ("I16", 2, torch.int16, "<i2")
    I8 = ("I8", 1, torch.int8, "i1")
    U64 = ("U64", 8, torch.uint64, "<i8")
    U32 = ("U32", 4, torch.uint32, "<i4")
    U16 = ("U16", 2, torch.uint16, "<i2")
    U8 = ("U8", 1, torch.uint8, "u1")
    BOOL = ("BOOL", 1, torch.bool, "?")

    def __init__(self, code: str, size: int, torch_dtype: torch.dtype, numpy_dtype: str):
        self.code = code
        self.size = size
        self.torch_dtype = torch_dtype
        self.numpy_dtype = numpy_dtype

    @property
    def is_floating_point(self) -> bool:
        return self.torch_dtype.is_floating_point

    @classmethod
    def from_code(cls, code: str) -> Optional[DType]:
        """Look up a header dtype string; None if unknown."""
        return _BY_CODE.get(code)

    @classmethod
    def from_torch(cls, dtype: torch.dtype) -> Optional[DType]:
        return _BY_TORCH.get(dtype)

    def __str__(self) -> str:
        return self.code


_BY_CODE = {member.code: member for member in DType}
_BY_TORCH = {member.torch_dtype: member for member in DType}


def parse_torch_dtype(name: str) -> torch.dtype:
    """
    Resolve a dtype name such as ``"bfloat16"`` or ``"F16"`` to a torch dtype.

    Raises
    ------
    ValueError
        If the name does not denote a supported dtype.
    """
    member = DType.from_code(name.upper())
    if member is not None:
        return member.torch_dtype

    resolved = getattr(torch, name, None)
    if isinstance(resolved, torch.dtype) and resolved in _BY_TORCH:
        return resolved

    raise ValueError(
        f"Unknown dtype '{name}'. Choose from: "
        f"{', '.join(str(d.torch_dtype).replace('torch.', '') for d in DType)}"
    )
