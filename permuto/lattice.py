"""Permutohedral lattice geometry.

A D-dimensional point is embedded ("elevated") into the hyperplane of
(D+1)-vectors whose coordinates sum to zero. The permutohedral lattice A*_D
is the set of integer points on that hyperplane whose coordinates are all
congruent modulo D+1. Every elevated point lies in exactly one simplex with
D+1 lattice vertices; the vertex keys and barycentric weights follow from
rounding and sorting the coordinates (Adams et al. 2010, "Fast High-
Dimensional Filtering Using the Permutohedral Lattice").

All functions are vectorized over leading batch dimensions.
"""

import torch


def elevation_matrix(
    n_dims: int,
    device: torch.device = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Matrix E that maps a D-vector into the zero-sum hyperplane.

    E[0, j] = 1 and, for i >= 1, E[i, j] = [j >= i] - i * [j == i - 1].
    The columns are mutually orthogonal and column j has norm
    sqrt((j + 1) * (j + 2)), so scaling column j by 1 / sqrt((j + 1)(j + 2))
    gives an isometry.

    Returns:
        (D+1, D) elevation matrix
    """
    i = torch.arange(n_dims + 1, device=device)[:, None]
    j = torch.arange(n_dims, device=device)[None, :]
    return (j >= i).to(dtype) - i.to(dtype) * (j == i - 1).to(dtype)


def elevate(scaled: torch.Tensor) -> torch.Tensor:
    """Elevate scaled coordinates (..., D) to (..., D+1) zero-sum coordinates."""
    E = elevation_matrix(scaled.shape[-1], scaled.device, scaled.dtype)
    return scaled @ E.T


def round_to_simplex(
    elevated: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Find the simplex enclosing each elevated point.

    Args:
        elevated: (..., D+1) points on the zero-sum hyperplane

    Returns:
        rem0: (..., D+1) int64 remainder-0 lattice point the simplex is built from
        rank: (..., D+1) int64 rank of each coordinate's remainder, a permutation of 0..D
        weights: (..., D+1) barycentric weights, non-negative and summing to 1
    """
    d1 = elevated.shape[-1]
    d = d1 - 1

    # Closest remainder-0 point, coordinate-wise
    v = elevated / d1
    up = torch.ceil(v) * d1
    down = torch.floor(v) * d1
    rem0 = torch.where(up - elevated < elevated - down, up, down).to(torch.int64)
    defect = torch.div(rem0.sum(-1, keepdim=True), d1, rounding_mode="floor")

    # rank[i] = number of coordinates with a larger remainder; ties go to the lower index
    diff = elevated - rem0
    idx = torch.arange(d1, device=elevated.device)
    before = idx[None, :] < idx[:, None]
    di = diff[..., :, None]
    dj = diff[..., None, :]
    rank = torch.where(before, dj >= di, dj > di).sum(-1) + defect

    # Bring the point back onto the zero-sum plane
    wrap = (rank < 0).to(torch.int64) - (rank > d).to(torch.int64)
    rank = rank + d1 * wrap
    rem0 = rem0 + d1 * wrap

    # Barycentric weights are successive differences of the sorted remainders
    delta = (elevated - rem0) / d1
    bary = elevated.new_zeros(*elevated.shape[:-1], d1 + 1)
    bary.scatter_add_(-1, d - rank, delta)
    bary.scatter_add_(-1, d - rank + 1, -delta)
    weights = bary[..., :d1].clone()
    weights[..., 0] += 1.0 + bary[..., d1]
    return rem0, rank, weights


def simplex_vertices(rem0: torch.Tensor, rank: torch.Tensor) -> torch.Tensor:
    """Integer lattice keys of the D+1 simplex vertices.

    Vertex k is reached from rem0 by adding k to every coordinate and
    subtracting D+1 from the k coordinates with the highest rank.

    Returns:
        (..., D+1, D+1) int64 keys, indexed [vertex, coordinate]; each key sums to zero
    """
    d1 = rem0.shape[-1]
    d = d1 - 1
    k = torch.arange(d1, device=rem0.device)[:, None]
    return rem0[..., None, :] + k - d1 * (rank[..., None, :] > d - k).to(torch.int64)


def weight_jacobian(rank: torch.Tensor, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Derivative of the barycentric weights w.r.t. the elevated coordinates.

    Within a simplex the weights are linear in the elevated point, so the
    derivative only depends on the ranks:
        dw[k]/de[i] = ([k == D - rank_i] - [k == D - rank_i + 1]
                       - [k == 0][rank_i == 0]) / (D + 1)

    Returns:
        (..., D+1, D+1) Jacobian indexed [vertex k, elevated coordinate i]
    """
    d1 = rank.shape[-1]
    d = d1 - 1
    k = torch.arange(d1, device=rank.device)[:, None]
    r = rank[..., None, :]
    jac = (
        (k == d - r).to(dtype)
        - (k == d - r + 1).to(dtype)
        - ((k == 0) & (r == 0)).to(dtype)
    )
    return jac / d1


def position_jacobian(
    rank: torch.Tensor,
    scales: torch.Tensor,
    rotations: torch.Tensor = None,
) -> torch.Tensor:
    """Derivative of the barycentric weights w.r.t. the unscaled positions.

    Chains weight_jacobian with the elevation, the per-dimension scale and,
    when given, the rotation applied to the raw positions.

    Args:
        rank: (N, D+1) ranks from round_to_simplex
        scales: (D,) per-dimension scale of the level
        rotations: optional (D, D) or (N, D, D) rotation applied as x' = R x

    Returns:
        (N, D+1, D) Jacobian indexed [vertex k, position coordinate j]
    """
    E = elevation_matrix(scales.shape[-1], scales.device, scales.dtype)
    jac = weight_jacobian(rank, scales.dtype) @ (E * scales)
    if rotations is not None:
        jac = jac @ rotations
    return jac


def locate_simplex(scaled: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Enclosing simplex of scaled positions.

    Args:
        scaled: (..., D) positions already multiplied by the level scale
            (and shifted, if a random shift is used)

    Returns:
        vertices: (..., D+1, D+1) int64 lattice keys of the simplex vertices
        weights: (..., D+1) barycentric weights of the vertices
    """
    rem0, rank, weights = round_to_simplex(elevate(scaled))
    return simplex_vertices(rem0, rank), weights
