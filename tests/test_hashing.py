"""Tests for vertex hashing and dense indexing."""

import math

import pytest
import torch

from permuto.hashing import PRIMES, dense_index, dense_strides, hash_vertex, spatial_hash
from permuto.lattice import locate_simplex
from permuto.meta import build_meta


class TestSpatialHash:
    def test_range(self):
        keys = torch.randint(-10_000, 10_000, (5000, 4))
        slots = spatial_hash(keys, 1000)
        assert slots.dtype == torch.int64
        assert slots.min() >= 0
        assert slots.max() < 1000

    def test_deterministic(self):
        keys = torch.randint(-500, 500, (100, 3))
        torch.testing.assert_close(spatial_hash(keys, 4096), spatial_hash(keys.clone(), 4096))

    def test_known_value(self):
        key = (3, -7, 12)
        expected = 0
        for k, prime in zip(key, PRIMES):
            expected ^= (k * prime) & 0xFFFFFFFF
        slots = spatial_hash(torch.tensor([key]), 2 ** 19)
        assert slots.item() == expected % 2 ** 19

    def test_spreads_keys(self):
        """Hash collisions exist but are not systematic."""
        grid = torch.cartesian_prod(torch.arange(-20, 20), torch.arange(-20, 20))
        slots = spatial_hash(grid, 2 ** 16)
        assert torch.unique(slots).numel() > 0.8 * grid.shape[0]

    def test_only_leading_coordinates_used(self):
        meta = build_meta(3, 64, [32.0], [2])
        keys = torch.tensor([[1, 2, 3, -6], [1, 2, 3, 99]])
        slots = hash_vertex(meta, 0, keys)
        assert slots[0] == slots[1]


def _lattice_keys(lo, extent):
    """Every A*_D key whose digits fall inside the box."""
    d1 = len(extent) + 1
    axes = [torch.arange(l, l + e) for l, e in zip(lo, extent)]
    digits = torch.cartesian_prod(*axes).reshape(-1, len(extent))
    keys = []
    for c in range(d1):
        head = c + d1 * digits
        keys.append(torch.cat([head, -head.sum(-1, keepdim=True)], dim=-1))
    return torch.cat(keys)


def _in_domain_keys(meta, level, n_points=4000, seed=0):
    """Vertex keys of random rotated and shifted points of [-1, 1]^D."""
    g = torch.Generator().manual_seed(seed)
    dim = meta.n_input_dims
    x = torch.rand(n_points, dim, generator=g, dtype=torch.float64) * 2 - 1
    R, _ = torch.linalg.qr(torch.randn(dim, dim, generator=g, dtype=torch.float64))
    shift = torch.rand(n_points, dim, generator=g, dtype=torch.float64) * 2 - 1
    scales = torch.tensor(meta.level_scales_multidim[level], dtype=torch.float64)
    vertices, _ = locate_simplex((x @ R.T) * scales + shift)
    return torch.unique(vertices.reshape(-1, dim + 1), dim=0)


class TestDenseIndex:
    def test_strides(self):
        assert dense_strides([5, 3, 7]) == [1, 5, 15]

    def test_bijective_on_lattice_points(self):
        lo, extent = [-2, -1], [4, 3]
        keys = _lattice_keys(lo, extent)
        slots = dense_index(keys, lo, extent)
        n_slots = 3 * math.prod(extent)
        assert keys.shape[0] == n_slots
        assert torch.equal(slots.sort().values, torch.arange(n_slots))

    def test_bijective_in_higher_dims(self):
        lo, extent = [-1, 0, -2], [2, 3, 4]
        slots = dense_index(_lattice_keys(lo, extent), lo, extent)
        assert torch.equal(slots.sort().values, torch.arange(4 * 24))

    def test_wraps_outside_box(self):
        lo, extent = [-2, -2], [5, 5]
        inside = torch.tensor([[1 + 3 * 1, 1 + 3 * -1]])
        outside = torch.tensor([[1 + 3 * 6, 1 + 3 * -6]])
        assert dense_index(inside, lo, extent) == dense_index(outside, lo, extent)

    def test_ignores_implied_coordinate(self):
        keys = torch.tensor([[4, -2, -2], [4, -2, 7]])
        slots = dense_index(keys, [-3, -3], [7, 7])
        assert slots[0] == slots[1]


class TestHashVertex:
    @pytest.mark.parametrize("dim,res,hashmap_size", [
        (2, 1.0, 2 ** 12),
        (3, 2.0, 2 ** 12),
        (4, 1.0, 2 ** 14),
    ])
    def test_dense_level_is_collision_free(self, dim, res, hashmap_size):
        """Distinct vertices inside the domain land in distinct dense slots."""
        meta = build_meta(dim, hashmap_size, [res], [2])
        assert not meta.level_use_hash[0]
        keys = _in_domain_keys(meta, 0)

        d1 = dim + 1
        cls = torch.remainder(keys[:, :1], d1)
        digits = torch.div(keys[:, :dim] - cls, d1, rounding_mode="floor")
        lo = torch.tensor(meta.level_dense_lo[0])
        hi = lo + torch.tensor(meta.level_dense_extent[0]) - 1
        assert ((digits >= lo) & (digits <= hi)).all()

        slots = hash_vertex(meta, 0, keys)
        assert torch.unique(slots).numel() == keys.shape[0]
        assert slots.max() < meta.level_sizes[0]

    def test_small_level_is_not_hashed(self):
        """A level with far fewer vertices than slots gets a dense table."""
        meta = build_meta(3, 2 ** 12, [2.0], [2])
        n_vertices = _in_domain_keys(meta, 0).shape[0]
        assert n_vertices < meta.hashmap_size
        assert meta.level_use_hash == (False,)
        assert meta.level_sizes[0] <= meta.hashmap_size

    def test_dense_table_is_mostly_used(self):
        meta = build_meta(2, 2 ** 12, [1.0], [2])
        n_vertices = _in_domain_keys(meta, 0, n_points=20000).shape[0]
        assert meta.level_sizes[0] < 8 * n_vertices

    def test_hashed_level_range(self):
        meta = build_meta(3, 64, [32.0], [2])
        assert meta.level_use_hash[0]
        keys = torch.randint(-1000, 1000, (500, 4))
        slots = hash_vertex(meta, 0, keys)
        assert slots.min() >= 0
        assert slots.max() < 64

    @pytest.mark.parametrize("dim", [2, 5, 8])
    def test_all_supported_dims(self, dim):
        meta = build_meta(dim, 128, [16.0], [2])
        vertices, _ = locate_simplex(torch.randn(10, dim) * 16)
        slots = hash_vertex(meta, 0, vertices)
        assert slots.shape == (10, dim + 1)
        assert slots.max() < meta.level_sizes[0]
