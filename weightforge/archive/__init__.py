"""
weightforge.archive — Safetensors Archive I/O
==============================================
Byte-exact reading of safetensors archives with typed errors for every
structural defect, plus a thin writer used by the offline quantizer.

Components:
    - dtypes.py  — DType enumeration (header code, byte size, torch dtype)
    - reader.py  — SafeTensorsArchive: header parsing and lazy tensor reads
    - writer.py  — write_archive: safetensors.torch.save_file wrapper

Information Flow:
    model.safetensors
        → SafeTensorsArchive (header only, mmap)
        → tensor(name) / load_all_tensors()
        → {name: torch.Tensor}
"""

from weightforge.archive.dtypes import DType, parse_torch_dtype
from weightforge.archive.reader import (
    SafeTensorsArchive,
    TensorDescriptor,
    find_archives,
    open_archive,
)
from weightforge.archive.writer import write_archive
