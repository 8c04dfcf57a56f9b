"""Hyperparameters for the permutohedral lattice encoding."""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np


@dataclass
class PermutoConfig:
    # Lattice
    n_input_dim: int = 3
    log2_hashmap_size: int = 18

    # Levels: resolutions are geometrically spaced between min and max
    n_levels: int = 16
    min_resolution: float = 2.0
    max_resolution: float = 512.0

    # Feature width per level (int for all levels, or one entry per level)
    n_feats: Union[int, Sequence[int]] = 2

    # Uniform init range of the lattice values
    init_scale: float = 1e-4

    # "pytorch", "triton", "triton-cpu" or "auto"
    backend: str = "pytorch"

    # Optional explicit resolutions, overrides min/max_resolution
    resolutions: Optional[Sequence[float]] = None

    @property
    def hashmap_size(self) -> int:
        return 2 ** self.log2_hashmap_size

    def res_list(self) -> list[float]:
        if self.resolutions is not None:
            return list(self.resolutions)
        if self.n_levels == 1:
            return [float(self.min_resolution)]
        return np.geomspace(
            self.min_resolution, self.max_resolution, num=self.n_levels
        ).tolist()

    def n_feats_list(self) -> list[int]:
        if isinstance(self.n_feats, int):
            return [self.n_feats] * len(self.res_list())
        return list(self.n_feats)


@dataclass
class TinyPermutoConfig(PermutoConfig):
    """Smaller config for testing."""
    log2_hashmap_size: int = 8
    n_levels: int = 4
    min_resolution: float = 1.0
    max_resolution: float = 8.0
    n_feats: Union[int, Sequence[int]] = 2
