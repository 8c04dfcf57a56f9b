"""Multi-resolution permutohedral lattice encoding, in PyTorch and Triton.

Each level scales the positions, locates their enclosing lattice simplex,
hashes the D+1 vertices into the level's feature table and blends the
vertex features with the barycentric weights. Levels are concatenated into
one (N, n_encoded_dims) feature vector.

Three passes are exposed: the forward lookup, the first-order backward
(gradients w.r.t. positions and lattice values) and the second-order
backward of the position gradient. They are wired into autograd by
permuto_encode / PermutoEncoding, which support double backward (e.g. for
eikonal losses on the encoded SDF gradient).
"""

import logging
from typing import NamedTuple, Optional, Sequence, Union

import numpy as np
import torch
import torch.nn as nn
from torch.autograd.function import once_differentiable

from permuto.config import PermutoConfig
from permuto.errors import DeviceError, ShapeError
from permuto.hashing import hash_vertex
from permuto.lattice import elevate, position_jacobian, round_to_simplex, simplex_vertices
from permuto.meta import EncodingMeta, build_meta
from permuto.triton_kernels import resolve_backend

logger = logging.getLogger(__name__)

LevelMask = Union[None, bool, Sequence[bool], torch.Tensor]


class LatticeOptions(NamedTuple):
    """Per-call lattice randomization, resolved against the positions."""
    batch_index: Optional[torch.Tensor]  # (N,) int64
    shifts: Optional[torch.Tensor]       # (L, D) or (B, L, D)
    rotations: Optional[torch.Tensor]    # (D, D) or (N, D, D)
    max_level: int


class _LevelLookup(NamedTuple):
    slots: torch.Tensor    # (N, D+1) int64
    weights: torch.Tensor  # (N, D+1)
    rank: torch.Tensor     # (N, D+1) int64


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------

def _check_tensor(name: str, tensor):
    if not isinstance(tensor, torch.Tensor):
        raise ShapeError(f"{name} must be a tensor, got {type(tensor).__name__}")


def _check_float(name: str, tensor: torch.Tensor, positions: torch.Tensor, shape: tuple):
    _check_tensor(name, tensor)
    if tensor.device != positions.device:
        raise DeviceError(f"{name} is on {tensor.device}, positions are on {positions.device}")
    if tensor.dtype != positions.dtype:
        raise DeviceError(f"{name} has dtype {tensor.dtype}, positions have {positions.dtype}")
    if tuple(tensor.shape) != tuple(shape):
        raise ShapeError(f"{name} must have shape {tuple(shape)}, got {tuple(tensor.shape)}")


def _check_positions(meta: EncodingMeta, positions: torch.Tensor, lattice_values: torch.Tensor):
    if not isinstance(positions, torch.Tensor) or not positions.is_floating_point():
        raise ShapeError("positions must be a floating point tensor")
    if positions.dim() != 2 or positions.shape[1] != meta.n_input_dims:
        raise ShapeError(
            f"positions must have shape (N, {meta.n_input_dims}), got {tuple(positions.shape)}"
        )
    _check_float("lattice_values", lattice_values, positions, (meta.n_params,))


def _resolve_batches(
    n_points: int,
    device: torch.device,
    batch_inds=None,
    batch_offsets=None,
    batch_data_size=None,
) -> tuple[Optional[torch.Tensor], Optional[int]]:
    """Per-point batch index from explicit indices or contiguous ranges.

    Returns:
        batch_index: (N,) int64 or None
        n_batches: number of batches or None
    """
    if batch_inds is not None:
        if batch_offsets is not None or batch_data_size is not None:
            raise ShapeError("batch_inds and batch_offsets/batch_data_size are mutually exclusive")
        if isinstance(batch_inds, torch.Tensor) and batch_inds.device != device:
            raise DeviceError(f"batch_inds is on {batch_inds.device}, positions are on {device}")
        batch_inds = torch.as_tensor(batch_inds, device=device)
        if batch_inds.dtype.is_floating_point or batch_inds.dtype == torch.bool:
            raise ShapeError(f"batch_inds must be integer, got {batch_inds.dtype}")
        if tuple(batch_inds.shape) != (n_points,):
            raise ShapeError(f"batch_inds must have shape ({n_points},), got {tuple(batch_inds.shape)}")
        if n_points == 0:
            return batch_inds.long(), 0
        if int(batch_inds.min()) < 0:
            raise ShapeError("batch_inds must be non-negative")
        return batch_inds.long(), int(batch_inds.max()) + 1

    if batch_data_size is not None:
        sizes = torch.as_tensor(batch_data_size, dtype=torch.int64, device=device).reshape(-1)
        if (sizes < 0).any():
            raise ShapeError("batch_data_size must be non-negative")
        from_sizes = torch.cat([sizes.new_zeros(1), torch.cumsum(sizes, 0)])
        if batch_offsets is not None:
            given = torch.as_tensor(batch_offsets, dtype=torch.int64, device=device).reshape(-1)
            if given.shape != from_sizes.shape or not torch.equal(given, from_sizes):
                raise ShapeError("batch_offsets and batch_data_size disagree")
        batch_offsets = from_sizes

    if batch_offsets is None:
        return None, None

    offsets = torch.as_tensor(batch_offsets, dtype=torch.int64, device=device).reshape(-1)
    if offsets.numel() < 2 or int(offsets[0]) != 0 or int(offsets[-1]) != n_points:
        raise ShapeError(f"batch_offsets must start at 0 and end at {n_points}")
    if (offsets[1:] < offsets[:-1]).any():
        raise ShapeError("batch_offsets must be non-decreasing")
    points = torch.arange(n_points, device=device)
    return torch.searchsorted(offsets[1:], points, right=True), offsets.numel() - 1


def _check_batched(name: str, n_entries: int, batch_index, n_batches):
    if batch_index is None:
        raise ShapeError(f"Per-batch {name} need batch_inds or batch_offsets")
    if n_entries < n_batches:
        raise ShapeError(f"{name} has {n_entries} batches, points reference {n_batches}")


def _prepare(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    level_random_shifts=None,
    batch_inds=None,
    batch_offsets=None,
    batch_data_size=None,
    max_level=None,
    rotations=None,
) -> LatticeOptions:
    """Validate a call and resolve its batching options. No work is done on failure."""
    _check_positions(meta, positions, lattice_values)
    N, D = positions.shape
    batch_index, n_batches = _resolve_batches(
        N, positions.device, batch_inds, batch_offsets, batch_data_size
    )

    if level_random_shifts is not None:
        _check_tensor("level_random_shifts", level_random_shifts)
        if level_random_shifts.dim() == 3:
            _check_batched("level_random_shifts", level_random_shifts.shape[0], batch_index, n_batches)
            shape = (level_random_shifts.shape[0], meta.n_levels, D)
        else:
            shape = (meta.n_levels, D)
        _check_float("level_random_shifts", level_random_shifts, positions, shape)

    if rotations is not None:
        _check_tensor("rotations", rotations)
        if rotations.dim() == 3:
            _check_batched("rotations", rotations.shape[0], batch_index, n_batches)
            _check_float("rotations", rotations, positions, (rotations.shape[0], D, D))
            rotations = rotations[batch_index]
        else:
            _check_float("rotations", rotations, positions, (D, D))

    if max_level is None:
        max_level = meta.n_levels
    max_level = max(0, min(int(max_level), meta.n_levels))
    return LatticeOptions(batch_index, level_random_shifts, rotations, max_level)


def _level_mask(meta: EncodingMeta, mask: LevelMask, name: str) -> tuple[bool, ...]:
    """Normalize a bool or per-level bool sequence to one flag per level."""
    if mask is None:
        return (True,) * meta.n_levels
    if isinstance(mask, torch.Tensor):
        mask = mask.tolist()
    if np.ndim(mask) == 0:
        return (bool(mask),) * meta.n_levels
    mask = tuple(bool(m) for m in np.ravel(mask))
    if len(mask) != meta.n_levels:
        raise ShapeError(f"{name} needs {meta.n_levels} entries, got {len(mask)}")
    return mask


def _active(opts: LatticeOptions, mask: tuple[bool, ...]) -> tuple[bool, ...]:
    return tuple(m and lvl < opts.max_level for lvl, m in enumerate(mask))


# ---------------------------------------------------------------------------
# PyTorch reference passes
# ---------------------------------------------------------------------------

def _rotate(positions: torch.Tensor, rotations: Optional[torch.Tensor]) -> torch.Tensor:
    if rotations is None:
        return positions
    if rotations.dim() == 2:
        return positions @ rotations.T
    return torch.einsum("nij,nj->ni", rotations, positions)


def _level_scales(meta: EncodingMeta, level: int, like: torch.Tensor) -> torch.Tensor:
    return like.new_tensor(meta.level_scales_multidim[level])


def _lookup_level(
    meta: EncodingMeta,
    level: int,
    rotated: torch.Tensor,
    opts: LatticeOptions,
) -> _LevelLookup:
    """Simplex, slots and weights of every point on one level."""
    scaled = rotated * _level_scales(meta, level, rotated)
    if opts.shifts is not None:
        if opts.shifts.dim() == 3:
            scaled = scaled + opts.shifts[opts.batch_index, level]
        else:
            scaled = scaled + opts.shifts[level]
    rem0, rank, weights = round_to_simplex(elevate(scaled))
    slots = hash_vertex(meta, level, simplex_vertices(rem0, rank))
    return _LevelLookup(slots, weights, rank)


def _feature_index(meta: EncodingMeta, pseudo_level: int, slots: torch.Tensor) -> torch.Tensor:
    """Flat indices (N, D+1, W) of the features a pseudo level reads."""
    level = meta.map_levels[pseudo_level]
    width = meta.n_feat_per_pseudo_lvl
    base = (
        meta.level_offsets[level]
        + slots * meta.level_n_feats[level]
        + meta.map_cnt[pseudo_level] * width
    )
    return base[..., None] + torch.arange(width, device=slots.device)


def _forward_pytorch(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    opts: LatticeOptions,
    active: tuple[bool, ...],
) -> torch.Tensor:
    out = positions.new_zeros(positions.shape[0], meta.n_encoded_dims)
    rotated = _rotate(positions, opts.rotations)
    for level in range(meta.n_levels):
        if not active[level]:
            continue
        lookup = _lookup_level(meta, level, rotated, opts)
        for p in meta.pseudo_range(level):
            feats = lattice_values[_feature_index(meta, p, lookup.slots)]  # (N, D+1, W)
            start, end = meta.pseudo_columns(p)
            out[:, start:end] = (lookup.weights[..., None] * feats).sum(1)
    return out


def _backward_pytorch(
    meta: EncodingMeta,
    dL_dy: torch.Tensor,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    opts: LatticeOptions,
    input_levels: tuple[bool, ...],
    param_levels: tuple[bool, ...],
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    dL_dx = positions.new_zeros(positions.shape) if any(input_levels) else None
    dL_dparams = lattice_values.new_zeros(meta.n_params) if any(param_levels) else None
    rotated = _rotate(positions, opts.rotations)
    for level in range(meta.n_levels):
        if not (input_levels[level] or param_levels[level]):
            continue
        lookup = _lookup_level(meta, level, rotated, opts)
        if input_levels[level]:
            dw_dx = position_jacobian(
                lookup.rank, _level_scales(meta, level, positions), opts.rotations
            )  # (N, D+1, D)
        for p in meta.pseudo_range(level):
            index = _feature_index(meta, p, lookup.slots)
            start, end = meta.pseudo_columns(p)
            dy = dL_dy[:, start:end]
            if param_levels[level]:
                contrib = lookup.weights[..., None] * dy[:, None, :]
                dL_dparams.index_add_(0, index.reshape(-1), contrib.reshape(-1))
            if input_levels[level]:
                dL_dw = (dy[:, None, :] * lattice_values[index]).sum(-1)  # (N, D+1)
                dL_dx += (dL_dw[..., None] * dw_dx).sum(1)
    return dL_dx, dL_dparams


def _backward_backward_pytorch(
    meta: EncodingMeta,
    dL_ddLdx: torch.Tensor,
    dL_dy: torch.Tensor,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    opts: LatticeOptions,
    dy_levels: tuple[bool, ...],
    param_levels: tuple[bool, ...],
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    dL_ddLdy = dL_dy.new_zeros(dL_dy.shape) if any(dy_levels) else None
    dL_dparams = lattice_values.new_zeros(meta.n_params) if any(param_levels) else None
    rotated = _rotate(positions, opts.rotations)
    for level in range(meta.n_levels):
        if not (dy_levels[level] or param_levels[level]):
            continue
        lookup = _lookup_level(meta, level, rotated, opts)
        dw_dx = position_jacobian(lookup.rank, _level_scales(meta, level, positions), opts.rotations)
        # Weights are piecewise linear in x, so only dw/dx meets the upstream sensitivity
        proj = (dw_dx * dL_ddLdx[:, None, :]).sum(-1)  # (N, D+1)
        for p in meta.pseudo_range(level):
            index = _feature_index(meta, p, lookup.slots)
            start, end = meta.pseudo_columns(p)
            if dy_levels[level]:
                dL_ddLdy[:, start:end] = (proj[..., None] * lattice_values[index]).sum(1)
            if param_levels[level]:
                contrib = proj[..., None] * dL_dy[:, None, start:end]
                dL_dparams.index_add_(0, index.reshape(-1), contrib.reshape(-1))
    return dL_ddLdy, dL_dparams


# ---------------------------------------------------------------------------
# Backend dispatch
# ---------------------------------------------------------------------------

# Half precision inputs are located and accumulated in float32
_COMPUTE_DTYPES = {torch.float16: torch.float32, torch.bfloat16: torch.float32}


def _upcast(opts: LatticeOptions, *tensors: torch.Tensor):
    """Cast half precision inputs (and the shift/rotation tables) to float32."""
    compute = _COMPUTE_DTYPES.get(tensors[0].dtype)
    if compute is None:
        return opts, tensors
    opts = opts._replace(
        shifts=None if opts.shifts is None else opts.shifts.to(compute),
        rotations=None if opts.rotations is None else opts.rotations.to(compute),
    )
    return opts, tuple(t.to(compute) for t in tensors)


def _cast(tensor: Optional[torch.Tensor], dtype: torch.dtype) -> Optional[torch.Tensor]:
    return None if tensor is None else tensor.to(dtype)


def _encode_forward(meta, positions, lattice_values, opts, backend, active=None):
    if active is None:
        active = _active(opts, (True,) * meta.n_levels)
    dtype = positions.dtype
    opts, (positions, lattice_values) = _upcast(opts, positions, lattice_values)
    if backend in ("triton", "triton-cpu"):
        from permuto.triton_kernels import triton_encode_forward
        out = triton_encode_forward(
            meta, _rotate(positions, opts.rotations), lattice_values,
            opts.batch_index, opts.shifts, active,
        )
    else:
        out = _forward_pytorch(meta, positions, lattice_values, opts, active)
    return out.to(dtype)


def _encode_backward(meta, dL_dy, positions, lattice_values, opts, backend,
                     input_levels, param_levels):
    input_levels = _active(opts, input_levels)
    param_levels = _active(opts, param_levels)
    dtype = positions.dtype
    opts, (positions, lattice_values, dL_dy) = _upcast(opts, positions, lattice_values, dL_dy)
    if backend in ("triton", "triton-cpu") and any(param_levels):
        from permuto.triton_kernels import triton_encode_backward_params
        dL_dparams = triton_encode_backward_params(
            meta, dL_dy, _rotate(positions, opts.rotations), lattice_values,
            opts.batch_index, opts.shifts, param_levels,
        )
        dL_dx, _ = _backward_pytorch(
            meta, dL_dy, positions, lattice_values, opts,
            input_levels, (False,) * meta.n_levels,
        )
    else:
        dL_dx, dL_dparams = _backward_pytorch(
            meta, dL_dy, positions, lattice_values, opts, input_levels, param_levels
        )
    return _cast(dL_dx, dtype), _cast(dL_dparams, dtype)


def _encode_backward_backward(meta, dL_ddLdx, dL_dy, positions, lattice_values, opts,
                              dy_levels, param_levels):
    dtype = positions.dtype
    opts, (positions, lattice_values, dL_ddLdx, dL_dy) = _upcast(
        opts, positions, lattice_values, dL_ddLdx, dL_dy
    )
    dL_ddLdy, dL_dparams = _backward_backward_pytorch(
        meta, dL_ddLdx, dL_dy, positions, lattice_values, opts,
        _active(opts, dy_levels), _active(opts, param_levels),
    )
    return _cast(dL_ddLdy, dtype), _cast(dL_dparams, dtype)


# ---------------------------------------------------------------------------
# Public functional API
# ---------------------------------------------------------------------------

def encode_forward(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    level_random_shifts: torch.Tensor = None,
    batch_inds: torch.Tensor = None,
    batch_offsets: torch.Tensor = None,
    batch_data_size: torch.Tensor = None,
    max_level: int = None,
    rotations: torch.Tensor = None,
    backend: str = "pytorch",
) -> torch.Tensor:
    """Encode positions with the permutohedral lattice.

    Args:
        meta: encoding tables from build_meta
        positions: (N, D) coordinates, nominally in [-1, 1]
        lattice_values: (n_params,) lattice features, read only
        level_random_shifts: optional (n_levels, D) or (n_batches, n_levels, D)
            offsets added to the scaled coordinates
        batch_inds: optional (N,) batch of each point
        batch_offsets: optional (n_batches+1,) contiguous batch ranges
        batch_data_size: optional (n_batches,) points per batch
        max_level: levels >= max_level output zeros (default: all levels)
        rotations: optional (D, D) or (n_batches, D, D) rotation of the positions
        backend: "pytorch", "triton", "triton-cpu" or "auto"

    Returns:
        (N, n_encoded_dims) encoded features
    """
    opts = _prepare(meta, positions, lattice_values, level_random_shifts,
                    batch_inds, batch_offsets, batch_data_size, max_level, rotations)
    backend = resolve_backend(backend, positions.device)
    return _encode_forward(meta, positions, lattice_values, opts, backend)


def encode_backward(
    meta: EncodingMeta,
    dL_dy: torch.Tensor,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    level_random_shifts: torch.Tensor = None,
    batch_inds: torch.Tensor = None,
    batch_offsets: torch.Tensor = None,
    batch_data_size: torch.Tensor = None,
    max_level: int = None,
    rotations: torch.Tensor = None,
    max_pos_dims: int = None,
    need_input_grad: LevelMask = None,
    need_param_grad: LevelMask = None,
    backend: str = "pytorch",
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    """Gradients of the encoding w.r.t. positions and lattice values.

    Args:
        meta: encoding tables from build_meta
        dL_dy: (N, n_encoded_dims) upstream gradient
        positions, lattice_values, level_random_shifts, batch_inds,
        batch_offsets, batch_data_size, max_level, rotations: as in encode_forward
        max_pos_dims: only the first max_pos_dims position columns get a
            gradient, the rest are zero (default: all)
        need_input_grad: bool or per-level bools, levels contributing to dL_dx
        need_param_grad: bool or per-level bools, levels receiving dL_dparams
        backend: "pytorch", "triton", "triton-cpu" or "auto"

    Returns:
        dL_dx: (N, D) or None if no level needs it
        dL_dparams: (n_params,) or None if no level needs it
    """
    opts = _prepare(meta, positions, lattice_values, level_random_shifts,
                    batch_inds, batch_offsets, batch_data_size, max_level, rotations)
    _check_float("dL_dy", dL_dy, positions, (positions.shape[0], meta.n_encoded_dims))
    input_levels = _level_mask(meta, need_input_grad, "need_input_grad")
    param_levels = _level_mask(meta, need_param_grad, "need_param_grad")
    backend = resolve_backend(backend, positions.device)

    dL_dx, dL_dparams = _encode_backward(
        meta, dL_dy, positions, lattice_values, opts, backend, input_levels, param_levels
    )
    if dL_dx is not None and max_pos_dims is not None and max_pos_dims < meta.n_input_dims:
        dL_dx[:, max(max_pos_dims, 0):] = 0
    return dL_dx, dL_dparams


def encode_backward_backward_input(
    meta: EncodingMeta,
    dL_ddLdx: torch.Tensor,
    dL_dy: torch.Tensor,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    level_random_shifts: torch.Tensor = None,
    batch_inds: torch.Tensor = None,
    batch_offsets: torch.Tensor = None,
    batch_data_size: torch.Tensor = None,
    max_level: int = None,
    rotations: torch.Tensor = None,
    need_dL_ddLdy: LevelMask = None,
    need_dL_dparams: LevelMask = None,
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    """Backpropagate a sensitivity on the position gradient of encode_backward.

    Args:
        meta: encoding tables from build_meta
        dL_ddLdx: (N, D) upstream sensitivity to dL_dx
        dL_dy: (N, n_encoded_dims) the gradient dL_dx was computed from
        positions, lattice_values, level_random_shifts, batch_inds,
        batch_offsets, batch_data_size, max_level, rotations: as in encode_forward
        need_dL_ddLdy: bool or per-level bools, levels receiving dL_ddLdy
        need_dL_dparams: bool or per-level bools, levels receiving dL_dparams

    Returns:
        dL_ddLdy: (N, n_encoded_dims) or None
        dL_dparams: (n_params,) or None
    """
    opts = _prepare(meta, positions, lattice_values, level_random_shifts,
                    batch_inds, batch_offsets, batch_data_size, max_level, rotations)
    _check_float("dL_ddLdx", dL_ddLdx, positions, tuple(positions.shape))
    _check_float("dL_dy", dL_dy, positions, (positions.shape[0], meta.n_encoded_dims))
    dy_levels = _level_mask(meta, need_dL_ddLdy, "need_dL_ddLdy")
    param_levels = _level_mask(meta, need_dL_dparams, "need_dL_dparams")
    return _encode_backward_backward(
        meta, dL_ddLdx, dL_dy, positions, lattice_values, opts, dy_levels, param_levels
    )


# ---------------------------------------------------------------------------
# autograd.Function wrappers for training support
# ---------------------------------------------------------------------------

class _PermutoEncodeFunction(torch.autograd.Function):
    """Autograd wrapper: lattice forward, analytic backward."""

    @staticmethod
    def forward(ctx, positions, lattice_values, meta, opts, backend):
        ctx.save_for_backward(positions, lattice_values)
        ctx.meta = meta
        ctx.opts = opts
        ctx.backend = backend
        return _encode_forward(meta, positions, lattice_values, opts, backend)

    @staticmethod
    def backward(ctx, dL_dy):
        positions, lattice_values = ctx.saved_tensors
        dL_dx, dL_dparams = _PermutoEncodeBackwardFunction.apply(
            dL_dy, positions, lattice_values,
            ctx.meta, ctx.opts, ctx.backend,
            ctx.needs_input_grad[0], ctx.needs_input_grad[1],
        )
        return dL_dx, dL_dparams, None, None, None


class _PermutoEncodeBackwardFunction(torch.autograd.Function):
    """First-order backward as a function of (dL_dy, positions, lattice_values).

    Its own backward gives the second-order terms, so gradients of the
    position gradient (eikonal / normal losses) reach the lattice values.
    """

    @staticmethod
    def forward(ctx, dL_dy, positions, lattice_values, meta, opts, backend,
                need_input_grad, need_param_grad):
        ctx.set_materialize_grads(False)
        dL_dy = dL_dy.contiguous()
        ctx.save_for_backward(dL_dy, positions, lattice_values)
        ctx.meta = meta
        ctx.opts = opts
        ctx.backend = backend
        n_levels = meta.n_levels
        return _encode_backward(
            meta, dL_dy, positions, lattice_values, opts, backend,
            (need_input_grad,) * n_levels, (need_param_grad,) * n_levels,
        )

    @staticmethod
    @once_differentiable
    def backward(ctx, dL_ddLdx, dL_ddLdparams):
        dL_dy, positions, lattice_values = ctx.saved_tensors
        meta, opts = ctx.meta, ctx.opts
        need_dy, need_pos, need_values = ctx.needs_input_grad[:3]
        all_levels = (True,) * meta.n_levels
        no_levels = (False,) * meta.n_levels

        grad_dy = grad_pos = grad_values = None
        if dL_ddLdx is not None and (need_dy or need_values):
            grad_dy, grad_values = _encode_backward_backward(
                meta, dL_ddLdx, dL_dy, positions, lattice_values, opts,
                all_levels if need_dy else no_levels,
                all_levels if need_values else no_levels,
            )
        # dL_dparams = sum_k w_k dL_dy scattered to slots: linear in dL_dy,
        # and w_k depends on the positions
        if dL_ddLdparams is not None:
            if need_dy:
                from_params = _encode_forward(meta, positions, dL_ddLdparams, opts, ctx.backend)
                grad_dy = from_params if grad_dy is None else grad_dy + from_params
            if need_pos:
                grad_pos, _ = _encode_backward(
                    meta, dL_dy, positions, dL_ddLdparams, opts, "pytorch",
                    all_levels, no_levels,
                )
        return grad_dy, grad_pos, grad_values, None, None, None, None, None


def permuto_encode(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    level_random_shifts: torch.Tensor = None,
    batch_inds: torch.Tensor = None,
    batch_offsets: torch.Tensor = None,
    batch_data_size: torch.Tensor = None,
    max_level: int = None,
    rotations: torch.Tensor = None,
    backend: str = "pytorch",
) -> torch.Tensor:
    """Differentiable encode_forward (twice differentiable w.r.t. positions).

    Arguments as in encode_forward.

    Returns:
        (N, n_encoded_dims) encoded features
    """
    opts = _prepare(meta, positions, lattice_values, level_random_shifts,
                    batch_inds, batch_offsets, batch_data_size, max_level, rotations)
    backend = resolve_backend(backend, positions.device)
    return _PermutoEncodeFunction.apply(positions, lattice_values, meta, opts, backend)


class PermutoEncoding(nn.Module):
    """Multi-resolution permutohedral lattice encoding with learned features.

    Input dim D -> output dim sum(n_feats_list)
    """

    def __init__(
        self,
        n_input_dim: int,
        hashmap_size: int,
        res_list: Sequence[float],
        n_feats_list: Sequence[int],
        init_scale: float = 1e-4,
        dtype: torch.dtype = torch.float32,
        backend: str = "pytorch",
    ):
        super().__init__()
        self.meta = build_meta(n_input_dim, hashmap_size, res_list, n_feats_list)
        self.input_dim = n_input_dim
        self.output_dim = self.meta.n_encoded_dims
        self.backend = backend
        self.lattice_values = nn.Parameter(
            torch.empty(self.meta.n_params, dtype=dtype).uniform_(-init_scale, init_scale)
        )
        logger.info(
            "Permutohedral encoding: D=%d, %d levels (%d hashed), %d params, output_dim=%d",
            n_input_dim, self.meta.n_levels, sum(self.meta.level_use_hash),
            self.meta.n_params, self.output_dim,
        )

    @classmethod
    def from_config(cls, config: PermutoConfig, dtype: torch.dtype = torch.float32) -> "PermutoEncoding":
        return cls(
            config.n_input_dim,
            config.hashmap_size,
            config.res_list(),
            config.n_feats_list(),
            init_scale=config.init_scale,
            dtype=dtype,
            backend=config.backend,
        )

    def forward(
        self,
        x: torch.Tensor,
        level_random_shifts: torch.Tensor = None,
        batch_inds: torch.Tensor = None,
        batch_offsets: torch.Tensor = None,
        batch_data_size: torch.Tensor = None,
        max_level: int = None,
        rotations: torch.Tensor = None,
    ) -> torch.Tensor:
        """Encode input coordinates.

        Args:
            x: (N, D) input coordinates, nominally in [-1, 1]
            level_random_shifts, batch_inds, batch_offsets, batch_data_size,
            max_level, rotations: as in encode_forward

        Returns:
            (N, output_dim) encoded coordinates
        """
        return permuto_encode(
            self.meta, x, self.lattice_values,
            level_random_shifts=level_random_shifts,
            batch_inds=batch_inds,
            batch_offsets=batch_offsets,
            batch_data_size=batch_data_size,
            max_level=max_level,
            rotations=rotations,
            backend=self.backend,
        )

    def extra_repr(self) -> str:
        return (
            f"input_dim={self.input_dim}, output_dim={self.output_dim}, "
            f"n_levels={self.meta.n_levels}, n_params={self.meta.n_params}"
        )
