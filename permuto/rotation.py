"""Random rotations of the permutohedral lattice.

Rotating the lattice differently per scene or batch decorrelates the cell
boundaries and suppresses axis-aligned artifacts. A rotation is drawn in the
D-dimensional coordinates of the zero-sum hyperplane of the (D+1)-space the
lattice lives in, so it can be applied either to the raw positions or,
embedded with the hyperplane basis, to elevated coordinates.
"""

import torch


def zero_sum_basis(
    dim: int,
    device: torch.device = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Orthonormal basis Q of the hyperplane orthogonal to the all-ones vector.

    Returns:
        (dim+1, dim) matrix with orthonormal columns summing to zero
    """
    eye = torch.eye(dim + 1, device=device, dtype=dtype)
    ones = torch.ones(dim + 1, 1, device=device, dtype=dtype)
    projector = eye - ones @ ones.T / (dim + 1)
    Q, _ = torch.linalg.qr(projector)
    return Q[:, :dim]


def sample_rotations(
    dim: int,
    count: int,
    device: torch.device = None,
    dtype: torch.dtype = torch.float32,
    generator: torch.Generator = None,
) -> torch.Tensor:
    """Draw random orthogonal matrices in the basis of the zero-sum hyperplane.

    Args:
        dim: lattice dimension D
        count: number of matrices
        generator: optional torch.Generator for reproducibility

    Returns:
        (count, dim, dim) orthogonal matrices
    """
    gaussian = torch.randn(count, dim, dim, generator=generator, dtype=dtype)
    Q, R = torch.linalg.qr(gaussian)
    # Fold the signs of diag(R) into Q so the draw is uniform over O(dim)
    signs = torch.sign(torch.diagonal(R, dim1=-2, dim2=-1))
    signs = torch.where(signs == 0, torch.ones_like(signs), signs)
    return (Q * signs[..., None, :]).to(device)


def embed_rotation(rotations: torch.Tensor, basis: torch.Tensor = None) -> torch.Tensor:
    """Lift rotations of the hyperplane coordinates to the ambient (D+1)-space.

    The result is Q R Q^T + 11^T / (D+1): orthogonal, it rotates the zero-sum
    hyperplane within itself and leaves the all-ones direction fixed.

    Args:
        rotations: (..., D, D) orthogonal matrices from sample_rotations
        basis: optional (D+1, D) basis from zero_sum_basis

    Returns:
        (..., D+1, D+1) orthogonal matrices
    """
    dim = rotations.shape[-1]
    if basis is None:
        basis = zero_sum_basis(dim, rotations.device, rotations.dtype)
    ones = torch.full((dim + 1, dim + 1), 1.0 / (dim + 1), device=rotations.device, dtype=rotations.dtype)
    return basis @ rotations @ basis.T + ones
