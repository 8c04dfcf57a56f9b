"""Tests for random lattice rotations."""

import pytest
import torch

from permuto.rotation import embed_rotation, sample_rotations, zero_sum_basis


@pytest.mark.parametrize("dim", [2, 3, 4, 8])
class TestRotations:
    def test_shape(self, dim):
        R = sample_rotations(dim, 5)
        assert R.shape == (5, dim, dim)

    def test_orthogonal(self, dim):
        R = sample_rotations(dim, 20, dtype=torch.float64)
        eye = torch.eye(dim, dtype=torch.float64).expand(20, dim, dim)
        torch.testing.assert_close(R.transpose(-1, -2) @ R, eye)
        torch.testing.assert_close(R @ R.transpose(-1, -2), eye)

    def test_basis_orthonormal_and_zero_sum(self, dim):
        Q = zero_sum_basis(dim, dtype=torch.float64)
        assert Q.shape == (dim + 1, dim)
        torch.testing.assert_close(Q.T @ Q, torch.eye(dim, dtype=torch.float64))
        torch.testing.assert_close(Q.sum(0), torch.zeros(dim, dtype=torch.float64))

    def test_embedded_rotation_preserves_hyperplane(self, dim):
        R = sample_rotations(dim, 4, dtype=torch.float64)
        M = embed_rotation(R)
        assert M.shape == (4, dim + 1, dim + 1)
        eye = torch.eye(dim + 1, dtype=torch.float64).expand(4, dim + 1, dim + 1)
        torch.testing.assert_close(M.transpose(-1, -2) @ M, eye)

        v = torch.randn(dim + 1, dtype=torch.float64)
        v = v - v.mean()
        rotated = M @ v
        torch.testing.assert_close(rotated.sum(-1), torch.zeros(4, dtype=torch.float64))
        ones = torch.ones(dim + 1, dtype=torch.float64)
        torch.testing.assert_close(M @ ones, ones.expand(4, dim + 1))


class TestSampling:
    def test_generator_reproducible(self):
        a = sample_rotations(3, 4, generator=torch.Generator().manual_seed(7))
        b = sample_rotations(3, 4, generator=torch.Generator().manual_seed(7))
        torch.testing.assert_close(a, b)

    def test_draws_differ(self):
        R = sample_rotations(3, 2, generator=torch.Generator().manual_seed(0))
        assert not torch.allclose(R[0], R[1])

    def test_both_orientations_drawn(self):
        R = sample_rotations(3, 200, dtype=torch.float64, generator=torch.Generator().manual_seed(1))
        dets = torch.linalg.det(R)
        torch.testing.assert_close(dets.abs(), torch.ones(200, dtype=torch.float64))
        assert (dets > 0).any() and (dets < 0).any()

    def test_identity_embeds_to_identity(self):
        eye = torch.eye(4, dtype=torch.float64)
        torch.testing.assert_close(embed_rotation(eye), torch.eye(5, dtype=torch.float64))
