"""
WeightForge Parameter Registry
================================
An explicit index of a module's parameter tree: dotted path → mutable slot.

Built once from ``nn.Module.named_modules()``, the registry turns binding
into a dictionary lookup followed by an in-place assignment, instead of
walking attributes for every tensor name.

    "layers.0.attn.q_proj.weight" → ParameterSlot(module=<Linear>, attr="weight")

Parameters and persistent buffers are indexed; non-persistent buffers (RoPE
caches and the like) are not part of any checkpoint and are skipped.

Usage:
    >>> registry = ParameterRegistry.from_module(model)
    >>> "layers.0.attn.q_proj.weight" in registry
    True
    >>> registry.assign("layers.0.attn.q_proj.weight", new_weight)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)


@dataclass
class ParameterSlot:
    """Location of one parameter or buffer inside the module tree."""
    module: nn.Module
    attr: str
    is_buffer: bool = False

    @property
    def tensor(self) -> torch.Tensor:
        return getattr(self.module, self.attr)


class ParameterRegistry:
    """
    Dotted-path index over the parameters and persistent buffers of a module.

    Parameters
    ----------
    root : nn.Module
        The module whose tree is indexed. Paths match ``state_dict()`` keys.
    """

    def __init__(self, root: nn.Module):
        self.root = root
        self._slots: dict[str, ParameterSlot] = {}
        self.rebuild()

    @classmethod
    def from_module(cls, module: nn.Module) -> ParameterRegistry:
        return cls(module)

    def rebuild(self) -> None:
        """Re-index the tree, e.g. after a sub-module was replaced."""
        slots = {}
        for module_name, module in self.root.named_modules():
            prefix = f"{module_name}." if module_name else ""
            for name, _ in module.named_parameters(recurse=False):
                slots[prefix + name] = ParameterSlot(module, name)
            for name, _ in module.named_buffers(recurse=False):
                if name in module._non_persistent_buffers_set:
                    continue
                slots[prefix + name] = ParameterSlot(module, name, is_buffer=True)
        self._slots = slots
        logger.debug(f"Indexed {len(slots)} tensors of {type(self.root).__name__}")

    # ─── Lookup ─────────────────────────────────────────────────────────

    def get(self, path: str) -> Optional[ParameterSlot]:
        return self._slots.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[str]:
        return iter(self._slots)

    def names(self) -> list[str]:
        return list(self._slots)

    def tensor(self, path: str) -> torch.Tensor:
        slot = self._slots.get(path)
        if slot is None:
            raise KeyError(f"No parameter at path: {path}")
        return slot.tensor

    def module_at(self, path: str) -> Optional[nn.Module]:
        """Sub-module at ``path``; None if there is none."""
        try:
            return self.root.get_submodule(path)
        except AttributeError:
            return None

    # ─── Mutation ───────────────────────────────────────────────────────

    @torch.no_grad()
    def assign(self, path: str, value: torch.Tensor) -> None:
        """
        Overwrite the tensor at ``path`` with ``value``.

        Same dtype: copied in place, so views and optimizer references stay
        valid. Different dtype: the storage is swapped for a copy of
        ``value``, which is how a binder moves a slot to the working
        precision.
        """
        slot = self._slots.get(path)
        if slot is None:
            raise KeyError(f"No parameter at path: {path}")

        current = slot.tensor
        if current.dtype == value.dtype and current.shape == value.shape:
            current.copy_(value)
        else:
            current.data = value.to(device=current.device).clone()

    def replace_module(self, path: str, module: nn.Module) -> None:
        """Swap the sub-module at ``path`` and re-index."""
        parent_path, _, child = path.rpartition(".")
        parent = self.root.get_submodule(parent_path) if parent_path else self.root
        setattr(parent, child, module)
        self.rebuild()
