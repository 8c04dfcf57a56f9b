"""Mapping of lattice vertex keys to slots of a level's feature table.

Coarse levels whose lattice vertices (inside the encoded domain) fit into
the table enumerate the lattice points densely: every vertex gets its
own slot. Finer levels use a spatial hash; colliding vertices share a
slot and hence a feature vector. There is no probing or chaining, collisions
act as implicit weight sharing.

Only the first D coordinates of a key take part, the last one is implied
by the zero-sum constraint.
"""

import math

import torch

# Multipliers of the spatial hash, one per key coordinate. The first six
# are the primes of Teschner et al. / instant-ngp, the last two are
# 2**31 - 1 and the largest prime below 2**32.
PRIMES = (
    2_654_435_761,
    805_459_861,
    3_674_653_429,
    2_097_192_037,
    1_434_869_437,
    2_165_219_737,
    2_147_483_647,
    4_294_967_291,
)

MASK_32 = 0xFFFFFFFF


def spatial_hash(keys: torch.Tensor, hashmap_size: int) -> torch.Tensor:
    """XOR of prime-multiplied coordinates, wrapped to 32 bits.

    Args:
        keys: (..., D) int64 lattice keys, D <= len(PRIMES)
        hashmap_size: number of slots

    Returns:
        (...) int64 slot indices in [0, hashmap_size)
    """
    n_dims = keys.shape[-1]
    primes = torch.tensor(PRIMES[:n_dims], dtype=torch.int64, device=keys.device)
    mixed = (keys[..., :n_dims] * primes) & MASK_32
    h = mixed[..., 0]
    for i in range(1, n_dims):
        h = h ^ mixed[..., i]
    return h % hashmap_size


def dense_strides(extent) -> list[int]:
    """Mixed-radix strides of a digit box with the given extents."""
    strides = []
    stride = 1
    for e in extent:
        strides.append(stride)
        stride *= e
    return strides


def dense_index(keys: torch.Tensor, lo, extent) -> torch.Tensor:
    """Bijective enumeration of the lattice keys inside a digit box.

    All coordinates of an A*_D key are congruent to its remainder class
    c = key[0] mod (D+1), so every (key_j - c) / (D+1) is an integer digit.
    The digits of the first D coordinates index a box [lo_j, lo_j + extent_j)
    and the D+1 classes are stacked one box after the other.

    Digits outside the box wrap around modulo the box extent.

    Args:
        keys: (..., D+1) or (..., D) int64 lattice keys
        lo: D lowest digits of the box
        extent: D digit counts of the box

    Returns:
        (...) int64 slot indices in [0, (D+1) * prod(extent))
    """
    n_dims = len(extent)
    d1 = n_dims + 1
    lo_t = torch.tensor(list(lo), dtype=torch.int64, device=keys.device)
    extent_t = torch.tensor(list(extent), dtype=torch.int64, device=keys.device)
    strides = torch.tensor(dense_strides(extent), dtype=torch.int64, device=keys.device)
    remainder = torch.remainder(keys[..., :1], d1)
    digits = torch.div(keys[..., :n_dims] - remainder, d1, rounding_mode="floor")
    digits = torch.remainder(digits - lo_t, extent_t)
    return remainder[..., 0] * math.prod(extent) + (digits * strides).sum(-1)


def hash_vertex(meta, level: int, keys: torch.Tensor) -> torch.Tensor:
    """Slot of each vertex key on one level, consistent across all passes.

    Args:
        meta: EncodingMeta
        level: real level index
        keys: (..., D+1) int64 lattice keys

    Returns:
        (...) int64 slot indices in [0, meta.level_sizes[level])
    """
    if meta.level_use_hash[level]:
        return spatial_hash(keys[..., :meta.n_input_dims], meta.hashmap_size)
    return dense_index(keys, meta.level_dense_lo[level], meta.level_dense_extent[level])
