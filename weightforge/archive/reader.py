"""
WeightForge Safetensors Archive Reader
========================================
Random-access, lazy reader for the safetensors binary format. Only the
header is parsed on open; tensor bytes are read on demand from a read-only
memory map, so opening a 20GB checkpoint costs a few kilobytes of I/O.

File Layout:
    ┌────────────┬───────────────────────────┬──────────────────────────┐
    │ 8 bytes    │ header_length bytes       │ data segment             │
    │ u64 LE = H │ UTF-8 JSON {name: {...}}  │ raw little-endian tensor │
    │            │                           │ bytes, addressed by      │
    │            │                           │ data_offsets [start,end) │
    └────────────┴───────────────────────────┴──────────────────────────┘

    Each JSON entry (except the reserved "__metadata__" key) looks like:
        {"dtype": "F32", "shape": [64, 128], "data_offsets": [0, 32768]}

Validation Order:
    All size and offset invariants are checked BEFORE any tensor byte range
    is touched, so a hostile or truncated file produces a typed error and
    never an out-of-bounds read:
        1. file >= 8 bytes                       → FileTooSmall
        2. 8 + header_length <= file size        → InvalidHeaderLength
        3. header is a UTF-8 JSON object         → MalformedHeader
        4. per tensor: fields present            → TensorMetadataMissing
                       dtype known               → UnsupportedDType
                       offsets inside segment    → InvalidOffsets
                       shape matches byte span   → InvalidShape

    In eager mode (the default) step 4 runs for every tensor on open. In lazy
    mode it runs on first access, so one corrupt descriptor only poisons its
    own tensor.

Usage:
    >>> with SafeTensorsArchive("transformer/model.safetensors") as archive:
    ...     print(archive.tensor_names()[:3])
    ...     w = archive.tensor("layers.0.attn.q_proj.weight", dtype=torch.bfloat16)
"""

from __future__ import annotations

import json
import logging
import math
import mmap
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

import numpy as np
import torch

from weightforge.archive.dtypes import DType
from weightforge.errors import (
    FileTooSmall,
    InvalidHeaderLength,
    InvalidOffsets,
    InvalidShape,
    MalformedHeader,
    TensorMetadataMissing,
    TensorNotFound,
    UnsupportedDType,
)

logger = logging.getLogger(__name__)

HEADER_LENGTH_BYTES = 8
METADATA_KEY = "__metadata__"
ARCHIVE_SUFFIX = ".safetensors"


@dataclass(frozen=True)
class TensorDescriptor:
    """
    Header entry for one tensor.

    Parameters
    ----------
    name : str
        Tensor key, unique within the archive.
    dtype : DType
        Storage scalar type.
    shape : tuple[int, ...]
        Dimension sizes. An empty tuple denotes a scalar.
    start, end : int
        Byte offsets relative to the start of the data segment.
    """
    name: str
    dtype: DType
    shape: tuple[int, ...]
    start: int
    end: int

    @property
    def element_count(self) -> int:
        """Product of the shape; 1 for a scalar."""
        return math.prod(self.shape)

    @property
    def byte_count(self) -> int:
        return self.end - self.start

    @property
    def data_offsets(self) -> tuple[int, int]:
        return (self.start, self.end)


def _is_int(value) -> bool:
    # JSON true/false decode to bool, which is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)


class SafeTensorsArchive:
    """
    A read-only, memory-mapped safetensors file.

    Parameters
    ----------
    path : str or Path
        Archive file path.
    lazy : bool
        Defer per-tensor header validation until each tensor is first
        accessed. Structural checks (steps 1-3) always run on open.

    Raises
    ------
    FileNotFoundError
        If the path does not exist.
    FileTooSmall, InvalidHeaderLength, MalformedHeader
        If the file cannot be an archive.
    TensorMetadataMissing, UnsupportedDType, InvalidOffsets, InvalidShape
        In eager mode, for the first corrupt tensor entry.
    """

    def __init__(self, path: Union[str, Path], lazy: bool = False):
        self.path = Path(path)
        self.lazy = lazy
        self._file = open(self.path, "rb")
        self._mmap: Optional[mmap.mmap] = None
        self._descriptors: dict[str, TensorDescriptor] = {}

        try:
            self._parse_header()
            if not lazy:
                for name in self._entries:
                    self._describe(name)
        except BaseException:
            self.close()
            raise

        logger.debug(
            f"Opened {self.path}: {len(self._entries)} tensors, "
            f"header={self.header_length} bytes, data={self.data_length} bytes"
        )

    # ─── Header Parsing ─────────────────────────────────────────────────

    def _parse_header(self) -> None:
        self.file_size = os.fstat(self._file.fileno()).st_size
        if self.file_size < HEADER_LENGTH_BYTES:
            raise FileTooSmall(self.path)

        (self.header_length,) = struct.unpack("<Q", self._file.read(HEADER_LENGTH_BYTES))
        if HEADER_LENGTH_BYTES + self.header_length > self.file_size:
            raise InvalidHeaderLength(self.path)

        self.data_start = HEADER_LENGTH_BYTES + self.header_length
        self.data_length = self.file_size - self.data_start

        self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        raw_header = self._mmap[HEADER_LENGTH_BYTES:self.data_start]

        try:
            header = json.loads(raw_header.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedHeader(self.path, str(e)) from e

        if not isinstance(header, dict):
            raise MalformedHeader(self.path, "header is not a JSON object")

        metadata = header.get(METADATA_KEY) or {}
        self.metadata_dict: dict[str, str] = (
            dict(metadata) if isinstance(metadata, dict) else {}
        )
        self._entries: dict[str, object] = {
            name: entry for name, entry in header.items() if name != METADATA_KEY
        }

    def _describe(self, name: str) -> TensorDescriptor:
        """Validate and cache the descriptor for ``name``."""
        cached = self._descriptors.get(name)
        if cached is not None:
            return cached

        entry = self._entries[name]
        if not isinstance(entry, dict) or not all(
            key in entry for key in ("dtype", "shape", "data_offsets")
        ):
            raise TensorMetadataMissing(name)

        raw_dtype = entry["dtype"]
        dtype = DType.from_code(raw_dtype) if isinstance(raw_dtype, str) else None
        if dtype is None:
            raise UnsupportedDType(str(raw_dtype))

        offsets = entry["data_offsets"]
        if (
            not isinstance(offsets, list)
            or len(offsets) != 2
            or not all(_is_int(o) for o in offsets)
        ):
            raise InvalidOffsets(name)
        start, end = offsets
        if not 0 <= start < end <= self.data_length:
            raise InvalidOffsets(name)

        shape = entry["shape"]
        if not isinstance(shape, list) or not all(_is_int(d) and d >= 0 for d in shape):
            raise InvalidShape(name)

        descriptor = TensorDescriptor(
            name=name, dtype=dtype, shape=tuple(shape), start=start, end=end
        )
        if descriptor.byte_count != descriptor.element_count * dtype.size:
            raise InvalidShape(name)

        self._descriptors[name] = descriptor
        return descriptor

    # ─── Enumeration ────────────────────────────────────────────────────

    def tensor_names(self) -> list[str]:
        """Tensor names in header declaration order."""
        return list(self._entries)

    def contains(self, name: str) -> bool:
        return name in self._entries

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def metadata(self, name: str) -> Optional[TensorDescriptor]:
        """
        Descriptor for ``name``, or None if the archive has no such tensor.

        In lazy mode this may raise the tensor's header error on first access.
        """
        if name not in self._entries:
            return None
        return self._describe(name)

    def all_metadata(self) -> list[TensorDescriptor]:
        return [self._describe(name) for name in self._entries]

    # ─── Materialization ────────────────────────────────────────────────

    def _require(self, name: str) -> TensorDescriptor:
        if name not in self._entries:
            raise TensorNotFound(name)
        return self._describe(name)

    def _read(self, descriptor: TensorDescriptor) -> bytes:
        if self._mmap is None:
            raise ValueError(f"Archive is closed: {self.path}")
        begin = self.data_start + descriptor.start
        return self._mmap[begin:begin + descriptor.byte_count]

    def tensor_data(self, name: str) -> bytes:
        """Exact stored bytes of ``name``, without any dtype conversion."""
        return self._read(self._require(name))

    def tensor(self, name: str, dtype: Optional[torch.dtype] = None) -> torch.Tensor:
        """
        Materialize a tensor.

        Parameters
        ----------
        name : str
            Tensor key.
        dtype : torch.dtype or None
            Output dtype. When it differs from the storage dtype the values
            are numerically converted (``Tensor.to``), never bit-cast.

        Returns
        -------
        torch.Tensor
            A CPU tensor that owns its memory.

        Raises
        ------
        TensorNotFound
            If the archive has no tensor called ``name``.
        """
        descriptor = self._require(name)
        buffer = bytearray(self._read(descriptor))

        array = np.frombuffer(buffer, dtype=descriptor.dtype.numpy_dtype)
        if not array.dtype.isnative:
            array = array.astype(array.dtype.newbyteorder("="))

        tensor = torch.from_numpy(array)
        if tensor.dtype != descriptor.dtype.torch_dtype:
            # Same-width bit view: bf16 and the unsigned types decode through
            # a signed/unsigned sibling that numpy understands
            tensor = tensor.view(descriptor.dtype.torch_dtype)
        tensor = tensor.reshape(descriptor.shape)

        if dtype is not None and dtype != tensor.dtype:
            tensor = tensor.to(dtype)
        return tensor

    def load_all_tensors(self, dtype: Optional[torch.dtype] = None) -> dict[str, torch.Tensor]:
        """
        Materialize every tensor. The first failure aborts the whole load.
        """
        return {name: self.tensor(name, dtype=dtype) for name in self._entries}

    # ─── Lifecycle ──────────────────────────────────────────────────────

    def close(self) -> None:
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> SafeTensorsArchive:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"SafeTensorsArchive(path={str(self.path)!r}, "
            f"tensors={len(self._entries)}, "
            f"data={self.data_length / (1024 * 1024):.1f}MB)"
        )


def open_archive(path: Union[str, Path], lazy: bool = False) -> SafeTensorsArchive:
    """Open a safetensors archive (see :class:`SafeTensorsArchive`)."""
    return SafeTensorsArchive(path, lazy=lazy)


def find_archives(directory: Union[str, Path]) -> list[Path]:
    """All ``*.safetensors`` files under ``directory``, sorted by path."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob(f"*{ARCHIVE_SUFFIX}") if p.is_file())
