"""
Writing safetensors archives.

Writing goes through ``safetensors.torch.save_file``; this module only
normalizes the inputs (contiguous CPU tensors, string metadata) and creates
the parent directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import torch
from safetensors.torch import save_file

logger = logging.getLogger(__name__)


def write_archive(
    tensors: dict[str, torch.Tensor],
    path: Union[str, Path],
    metadata: Optional[dict[str, str]] = None,
) -> Path:
    """
    Save ``tensors`` to ``path`` in safetensors format.

    Parameters
    ----------
    tensors : dict[str, torch.Tensor]
        Name → tensor. Tensors are moved to CPU and made contiguous.
    path : str or Path
        Output file. Parent directories are created.
    metadata : dict[str, str] or None
        Free-form string metadata stored under ``__metadata__``.

    Returns
    -------
    Path
        The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    prepared = {
        name: tensor.detach().to("cpu").contiguous()
        for name, tensor in tensors.items()
    }
    save_file(
        prepared,
        str(path),
        metadata={str(k): str(v) for k, v in (metadata or {}).items()} or None,
    )

    logger.debug(f"Wrote {len(prepared)} tensors to {path}")
    return path
