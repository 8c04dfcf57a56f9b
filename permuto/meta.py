"""Per-level tables of a permutohedral encoding, built once from configuration.

The encoding has n_levels resolution levels. Level l owns a block of
level_sizes[l] * level_n_feats[l] scalars inside one flat parameter buffer,
starting at level_offsets[l]. The kernels walk over "pseudo levels" of a
single fixed width instead of real levels, so a level of width F is split
into F / W consecutive pseudo levels that read neighbouring feature
columns of the same slots.
"""

import logging
import math
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
import torch

from permuto.errors import ConfigError
from permuto.hashing import PRIMES
from permuto.lattice import elevation_matrix

logger = logging.getLogger(__name__)

# One hash multiplier per encoded dimension
SUPPORTED_N_INPUT_DIMS = tuple(range(2, len(PRIMES) + 1))

MAX_N_FEAT_PER_PSEUDO_LVL = 8

# Domain assumed when sizing the dense (collision free) tables: positions in
# [-1, 1]^D, optionally rotated, and random shifts in [-1, 1].
POSITION_BOUND = 1.0
SHIFT_BOUND = 1.0


@dataclass(frozen=True)
class EncodingMeta:
    n_input_dims: int
    hashmap_size: int
    n_levels: int
    n_pseudo_levels: int
    n_feat_per_pseudo_lvl: int
    map_levels: tuple[int, ...]
    map_cnt: tuple[int, ...]
    level_n_feats: tuple[int, ...]
    level_scales0: tuple[float, ...]
    level_scales_multidim: tuple[tuple[float, ...], ...]
    level_use_hash: tuple[bool, ...]
    level_dense_lo: tuple[tuple[int, ...], ...]
    level_dense_extent: tuple[tuple[int, ...], ...]
    level_sizes: tuple[int, ...]
    level_n_params: tuple[int, ...]
    level_offsets: tuple[int, ...]
    n_params: int
    n_encoded_dims: int

    @property
    def n_dims_to_encode(self) -> int:
        return self.n_input_dims

    def pseudo_columns(self, pseudo_level: int) -> tuple[int, int]:
        """Output columns [start, end) written by a pseudo level."""
        start = pseudo_level * self.n_feat_per_pseudo_lvl
        return start, start + self.n_feat_per_pseudo_lvl

    def level_columns(self, level: int) -> tuple[int, int]:
        """Output columns [start, end) of a real level."""
        start = sum(self.level_n_feats[:level])
        return start, start + self.level_n_feats[level]

    def pseudo_range(self, level: int) -> range:
        """Pseudo levels a real level was split into."""
        start, end = self.level_columns(level)
        width = self.n_feat_per_pseudo_lvl
        return range(start // width, end // width)


def _per_dim_resolution(res: Union[float, Sequence[float]], n_input_dim: int) -> list[float]:
    if np.ndim(res) == 0:
        values = [float(res)] * n_input_dim
    else:
        values = [float(r) for r in res]
        if len(values) != n_input_dim:
            raise ConfigError(
                f"Anisotropic resolution needs {n_input_dim} entries, got {len(values)}"
            )
    if not all(math.isfinite(r) and r > 0 for r in values):
        raise ConfigError(f"Resolutions must be positive and finite, got {values}")
    return values


def _pseudo_width(n_feats_list: Sequence[int]) -> int:
    """Largest power of two dividing every level width, capped."""
    g = 0
    for f in n_feats_list:
        g = math.gcd(g, f)
    width = 1
    while width * 2 <= MAX_N_FEAT_PER_PSEUDO_LVL and g % (width * 2) == 0:
        width *= 2
    return width


def level_scales(res: Sequence[float]) -> list[float]:
    """Per-dimension scale of a level from its per-dimension resolution.

    Uses the inverse standard deviation (D+1) * sqrt(2/3) of Adams et al.
    and the 1 / sqrt((j+1)(j+2)) column normalization of the elevation, so
    a resolution of r gives roughly r lattice cells per unit length.
    """
    n_dims = len(res)
    inv_std = (n_dims + 1) * math.sqrt(2.0 / 3.0)
    return [r * inv_std / math.sqrt((j + 1) * (j + 2)) for j, r in enumerate(res)]


def dense_box(scales: Sequence[float]) -> tuple[list[int], list[int]]:
    """Digit box of dense_index holding every vertex reachable in the domain.

    Positions, rotated or not, stay in the ball of radius
    POSITION_BOUND * sqrt(D), so elevated coordinate i is bounded by that
    radius times the norm of row i of E * scales, plus sum_j |E_ij| times
    SHIFT_BOUND for the shift. The point is a convex combination of its
    simplex vertices and each vertex coordinate spans D over the simplex,
    so every key coordinate lies within D of the elevated one.

    Returns:
        lo: D lowest digits
        extent: D digit counts
    """
    n_dims = len(scales)
    d1 = n_dims + 1
    E = elevation_matrix(n_dims, dtype=torch.float64).numpy()[:n_dims]
    radius = POSITION_BOUND * math.sqrt(n_dims)
    bound = (
        np.linalg.norm(E * np.asarray(scales), axis=1) * radius
        + np.abs(E).sum(1) * SHIFT_BOUND
        + 1e-6
    )
    # key_j = c + (D+1) * digit_j with class c in [0, D]
    lo = [math.ceil((-b - 2 * n_dims) / d1) for b in bound]
    hi = [math.floor((b + n_dims) / d1) for b in bound]
    return lo, [h - l + 1 for l, h in zip(lo, hi)]


def build_meta(
    n_input_dim: int,
    hashmap_size: int,
    res_list: Sequence[Union[float, Sequence[float]]],
    n_feats_list: Sequence[int],
) -> EncodingMeta:
    """Build the immutable encoding tables.

    Args:
        n_input_dim: dimensionality D of the encoded coordinates
        hashmap_size: maximum number of slots of one level
        res_list: per-level resolution, a scalar or D per-dimension values
        n_feats_list: per-level feature width, each >= 2

    Returns:
        EncodingMeta

    Raises:
        ConfigError: unsupported dimension or malformed level lists
    """
    if n_input_dim not in SUPPORTED_N_INPUT_DIMS:
        raise ConfigError(
            f"n_input_dim={n_input_dim} not supported, expected one of {SUPPORTED_N_INPUT_DIMS}"
        )
    if int(hashmap_size) != hashmap_size or hashmap_size < 1:
        raise ConfigError(f"hashmap_size must be a positive integer, got {hashmap_size}")
    hashmap_size = int(hashmap_size)

    res_list = list(res_list)
    n_feats_list = list(n_feats_list)
    if len(res_list) == 0:
        raise ConfigError("At least one level is required")
    if len(res_list) != len(n_feats_list):
        raise ConfigError(
            f"res_list has {len(res_list)} levels but n_feats_list has {len(n_feats_list)}"
        )
    for f in n_feats_list:
        if int(f) != f or f < 2:
            raise ConfigError(f"Feature widths must be integers >= 2, got {n_feats_list}")
    n_feats_list = [int(f) for f in n_feats_list]

    width = _pseudo_width(n_feats_list)

    map_levels, map_cnt = [], []
    scales0, scales_multidim = [], []
    use_hash, lo_list, extent_list, sizes, n_params_list, offsets = [], [], [], [], [], [0]
    for lvl, (res, n_feats) in enumerate(zip(res_list, n_feats_list)):
        res = _per_dim_resolution(res, n_input_dim)
        scales = level_scales(res)
        lo, extent = dense_box(scales)
        n_dense = (n_input_dim + 1) * math.prod(extent)
        hashed = n_dense > hashmap_size
        size = hashmap_size if hashed else n_dense

        for cnt in range(n_feats // width):
            map_levels.append(lvl)
            map_cnt.append(cnt)

        scales0.append(float(np.mean(res)) * (n_input_dim + 1) * math.sqrt(2.0 / 3.0))
        scales_multidim.append(tuple(scales))
        use_hash.append(hashed)
        lo_list.append(tuple(lo))
        extent_list.append(tuple(extent))
        sizes.append(size)
        n_params_list.append(size * n_feats)
        offsets.append(offsets[-1] + size * n_feats)

        logger.debug(
            "level %d: res=%s n_feats=%d size=%d %s",
            lvl, res, n_feats, size, "hashed" if hashed else "dense",
        )

    return EncodingMeta(
        n_input_dims=n_input_dim,
        hashmap_size=hashmap_size,
        n_levels=len(res_list),
        n_pseudo_levels=len(map_levels),
        n_feat_per_pseudo_lvl=width,
        map_levels=tuple(map_levels),
        map_cnt=tuple(map_cnt),
        level_n_feats=tuple(n_feats_list),
        level_scales0=tuple(scales0),
        level_scales_multidim=tuple(scales_multidim),
        level_use_hash=tuple(use_hash),
        level_dense_lo=tuple(lo_list),
        level_dense_extent=tuple(extent_list),
        level_sizes=tuple(sizes),
        level_n_params=tuple(n_params_list),
        level_offsets=tuple(offsets),
        n_params=offsets[-1],
        n_encoded_dims=sum(n_feats_list),
    )
