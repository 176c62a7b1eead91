"""
WeightForge LoRA Loader
========================
Reads a low-rank adapter archive and renames its tensors into the base
model's parameter paths.

LoRA exports follow several naming conventions for the same layer:

    lora_unet_transformer_blocks.0.attn.qkv.lora_A.weight    (kohya style)
    diffusion_model.layers.0.attn.q_proj.lora_A.weight       (ComfyUI style)
    transformer_blocks.5.ff.net.0.proj.lora_A.weight         (diffusers style)

Key Remapping (applied in this order):
    1. strip a leading ``lora_unet_``
    2. strip a leading ``diffusion_model.`` (so both stacked prefixes go)
    3. ``<scope>.ff.net.0.proj`` → ``<scope>.ff.linear1``
       ``<scope>.ff.net.2.proj`` → ``<scope>.ff.linear2``
       (same for ``ff_context``); adapter suffixes are kept
    4. anything else passes through unchanged

A key that is exactly a prefix remaps to ``""``, which means "nothing to
apply": such tensors are dropped, never an error.

Usage:
    >>> weights = LoRALoader().load("loras/my_style")
    >>> weights.keys()[:2]
    ['layers.0.attn.q_proj.lora_A.weight', 'layers.0.attn.q_proj.lora_B.weight']
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Union

import torch

from weightforge.archive.reader import ARCHIVE_SUFFIX, SafeTensorsArchive, find_archives
from weightforge.errors import ApplicationFailed, DirectoryNotFound, WeightsNotFound

logger = logging.getLogger(__name__)

LORA_UNET_PREFIX = "lora_unet_"
DIFFUSION_MODEL_PREFIX = "diffusion_model."
# diffusers' default export name; preferred when a directory holds several archives
DEFAULT_WEIGHT_NAME = "pytorch_lora_weights.safetensors"

_FF_LINEAR1 = re.compile(r"(^|\.)(ff|ff_context)\.net\.0\.proj(?=\.|$)")
_FF_LINEAR2 = re.compile(r"(^|\.)(ff|ff_context)\.net\.2\.proj(?=\.|$)")


def remap_weight_key(key: str) -> str:
    """Map a LoRA tensor name onto the base model's naming convention."""
    if key.startswith(LORA_UNET_PREFIX):
        key = key[len(LORA_UNET_PREFIX):]
    if key.startswith(DIFFUSION_MODEL_PREFIX):
        key = key[len(DIFFUSION_MODEL_PREFIX):]
    key = _FF_LINEAR1.sub(r"\1\2.linear1", key)
    key = _FF_LINEAR2.sub(r"\1\2.linear2", key)
    return key


@dataclass
class LoRAWeights:
    """
    A remapped LoRA weight set.

    Parameters
    ----------
    tensors : dict[str, torch.Tensor]
        Remapped name → tensor.
    source : Path
        The archive the tensors came from.
    """
    tensors: dict[str, torch.Tensor] = field(default_factory=dict)
    source: Optional[Path] = None

    def keys(self) -> list[str]:
        return list(self.tensors)

    def __getitem__(self, key: str) -> torch.Tensor:
        return self.tensors[key]

    def __contains__(self, key: object) -> bool:
        return key in self.tensors

    def __len__(self) -> int:
        return len(self.tensors)

    def __iter__(self) -> Iterator[str]:
        return iter(self.tensors)


class LoRALoader:
    """Locates and reads LoRA archives."""

    def resolve(self, path: Union[str, Path], cache_dir: Optional[Union[str, Path]] = None) -> Path:
        """
        Find the archive to load.

        ``path`` may be an archive file, a directory holding archives, or a
        model id ("org/name") looked up as a sub-directory of ``cache_dir``.

        Raises
        ------
        DirectoryNotFound
            If nothing exists at ``path`` (nor under ``cache_dir``).
        WeightsNotFound
            If the directory holds no archive.
        """
        location = Path(path)
        if not location.exists() and cache_dir is not None:
            cached = Path(cache_dir) / str(path)
            if cached.exists():
                location = cached
        if not location.exists():
            raise DirectoryNotFound(path)

        if location.is_file():
            if location.suffix != ARCHIVE_SUFFIX:
                raise WeightsNotFound(location)
            return location

        preferred = location / DEFAULT_WEIGHT_NAME
        if preferred.is_file():
            return preferred

        archives = find_archives(location)
        if not archives:
            raise WeightsNotFound(location)
        if len(archives) > 1:
            logger.warning(
                f"{location} holds {len(archives)} archives, using {archives[0].name}"
            )
        return archives[0]

    def load(
        self,
        path: Union[str, Path],
        cache_dir: Optional[Union[str, Path]] = None,
    ) -> LoRAWeights:
        """
        Load and remap a LoRA.

        Raises
        ------
        DirectoryNotFound, WeightsNotFound
            See :meth:`resolve`.
        ApplicationFailed
            If two source keys remap to the same name.
        """
        archive_path = self.resolve(path, cache_dir=cache_dir)

        tensors: dict[str, torch.Tensor] = {}
        dropped = 0
        with SafeTensorsArchive(archive_path) as archive:
            for name in archive.tensor_names():
                key = remap_weight_key(name)
                if not key:
                    dropped += 1
                    continue
                if key in tensors:
                    raise ApplicationFailed(f"LoRA keys collide after remapping: {key}")
                tensors[key] = archive.tensor(name)

        if dropped:
            logger.debug(f"Dropped {dropped} LoRA tensors with empty names")
        logger.info(f"Loaded LoRA {archive_path.name}: {len(tensors)} tensors")
        return LoRAWeights(tensors=tensors, source=archive_path)
