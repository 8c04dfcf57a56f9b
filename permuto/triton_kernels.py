"""Triton kernels for the permutohedral lattice encoding.

Provides GPU (triton) and CPU (triton-cpu / interpreter) kernels for:
- Forward lattice lookup: simplex localization, hashing and feature blending
- Parameter gradient: the same lookup with an atomic scatter-add of
  weight * dL_dy into the feature gradient

The position gradient and the second-order pass run in PyTorch on every
backend (see permuto.encoding).

Backend options:
- "pytorch": Pure PyTorch reference implementation (default)
- "triton": Triton kernels on CUDA GPU
- "triton-cpu": Triton kernels on CPU (via TRITON_INTERPRET=1 or triton-cpu backend)
- "auto": Automatically select best available backend
"""

import functools
import logging
import math
import os
from typing import NamedTuple

import torch

from permuto.errors import ConfigError, DeviceError
from permuto.hashing import PRIMES, dense_strides
from permuto.meta import EncodingMeta

logger = logging.getLogger(__name__)

BACKENDS = ("pytorch", "triton", "triton-cpu", "auto")

_triton_available = None


def is_triton_available() -> bool:
    """Check if the triton package can be imported."""
    global _triton_available
    if _triton_available is None:
        try:
            import triton
            import triton.language as tl
            _triton_available = True
        except ImportError:
            _triton_available = False
    return _triton_available


def is_triton_cpu_available() -> bool:
    """Check if Triton can run on CPU (interpreter mode or triton-cpu backend)."""
    if not is_triton_available():
        return False
    if os.environ.get("TRITON_INTERPRET", "0") == "1":
        return True
    try:
        import triton.backends
        backends_dir = os.path.dirname(triton.backends.__file__)
        return os.path.isdir(os.path.join(backends_dir, "cpu"))
    except (ImportError, AttributeError, TypeError):
        return False


def is_triton_gpu_available() -> bool:
    """Check if Triton can run on GPU (requires CUDA)."""
    if not is_triton_available():
        return False
    return torch.cuda.is_available()


def resolve_backend(backend: str, device: torch.device = None) -> str:
    """Resolve 'auto' backend to a concrete backend based on availability.

    Args:
        backend: One of "pytorch", "triton", "triton-cpu", "auto"
        device: Device of the positions (used for 'auto' resolution and checks)

    Returns:
        Resolved backend string

    Raises:
        ConfigError: unknown backend name
        DeviceError: "triton" requested for tensors that are not on CUDA
    """
    if backend not in BACKENDS:
        raise ConfigError(f"Unknown backend {backend!r}, expected one of {BACKENDS}")
    if backend == "auto":
        if device is not None and device.type == "cuda" and is_triton_gpu_available():
            resolved = "triton"
        elif (device is None or device.type == "cpu") and is_triton_cpu_available():
            resolved = "triton-cpu"
        else:
            resolved = "pytorch"
        logger.debug("Resolved backend 'auto' to %r for device %s", resolved, device)
        return resolved
    if backend == "triton" and device is not None and device.type != "cuda":
        raise DeviceError(f"Backend 'triton' needs CUDA tensors, got device {device}")
    return backend


# ---------------------------------------------------------------------------
# Triton kernel definitions (lazily compiled on first use)
# ---------------------------------------------------------------------------

_permuto_lattice_kernel = None


def _ensure_kernels():
    """Import triton and define JIT kernels. Called once on first use."""
    global _permuto_lattice_kernel
    if _permuto_lattice_kernel is not None:
        return

    import triton
    import triton.language as tl

    @triton.jit
    def permuto_lattice_kernel(
        pos_ptr,             # (N, D) positions, already rotated
        batch_ptr,           # (N,) batch index of each point (BATCHED_SHIFT only)
        shift_ptr,           # (L, D) or (B, L, D) random shifts (HAS_SHIFT only)
        scale_ptr,           # (L, D) per-dimension level scales
        map_levels_ptr,      # (P,) real level of each pseudo level
        map_cnt_ptr,         # (P,) chunk index of each pseudo level within its level
        level_offsets_ptr,   # (L,) parameter offset of each level
        level_n_feats_ptr,   # (L,) feature width of each level
        level_sizes_ptr,     # (L,) slot count of each level
        level_use_hash_ptr,  # (L,) 1 if the level is hashed
        lo_ptr,              # (L, D) lowest digits of the dense box
        extent_ptr,          # (L, D) digit counts of the dense box
        strides_ptr,         # (L, D) dense box strides
        class_size_ptr,      # (L,) slots per remainder class of a dense level
        primes_ptr,          # (D,) hash multipliers
        active_ptr,          # (L,) 1 if the level is processed
        values_ptr,          # (n_params,) lattice values
        io_ptr,              # (N, n_encoded_dims) output, or dL_dy when BACKWARD
        grad_ptr,            # (n_params,) parameter gradient (BACKWARD only)
        N,
        n_levels,
        n_encoded_dims,
        D: tl.constexpr,
        W: tl.constexpr,
        HAS_SHIFT: tl.constexpr,
        BATCHED_SHIFT: tl.constexpr,
        BACKWARD: tl.constexpr,
        BLOCK_N: tl.constexpr,
        BLOCK_D1: tl.constexpr,
    ):
        """One program per block of points and pseudo level."""
        pid = tl.program_id(0)
        p = tl.program_id(1)

        lvl = tl.load(map_levels_ptr + p)
        if tl.load(active_ptr + lvl) == 0:
            return
        cnt = tl.load(map_cnt_ptr + p)

        n_offsets = pid * BLOCK_N + tl.arange(0, BLOCK_N)
        n_mask = n_offsets < N
        lanes = tl.arange(0, BLOCK_D1)
        d_mask = lanes < D
        e_mask = lanes < D + 1
        nd_mask = n_mask[:, None] & d_mask[None, :]

        # Scale (and shift) the positions, zero in padded lanes
        x = tl.load(pos_ptr + n_offsets[:, None] * D + lanes[None, :], mask=nd_mask, other=0.0)
        scale = tl.load(scale_ptr + lvl * D + lanes, mask=d_mask, other=0.0)
        c = x * scale[None, :]
        if HAS_SHIFT:
            if BATCHED_SHIFT:
                b = tl.load(batch_ptr + n_offsets, mask=n_mask, other=0)
                shift = tl.load(
                    shift_ptr + (b[:, None] * n_levels + lvl) * D + lanes[None, :],
                    mask=nd_mask, other=0.0,
                )
                c += shift
            else:
                shift = tl.load(shift_ptr + lvl * D + lanes, mask=d_mask, other=0.0)
                c += shift[None, :]

        # Elevate: e[i] = sum_{j >= i} c[j] - i * c[i - 1]
        ii = lanes[:, None]
        jj = lanes[None, :]
        elev = tl.where(jj >= ii, 1.0, 0.0) - tl.where(jj == ii - 1, ii.to(tl.float32), 0.0)
        elevated = tl.sum(c[:, None, :] * elev[None, :, :], axis=2)

        # Closest remainder-0 point
        up = tl.ceil(elevated / (D + 1)) * (D + 1)
        down = tl.floor(elevated / (D + 1)) * (D + 1)
        rem0 = tl.where(up - elevated < elevated - down, up, down)
        rem0 = tl.where(e_mask[None, :], rem0, 0.0)
        defect = tl.floor(tl.sum(rem0, axis=1) / (D + 1) + 0.5).to(tl.int32)

        # Rank of each remainder, ties go to the lower index
        diff = elevated - rem0
        di = diff[:, :, None]
        dj = diff[:, None, :]
        larger = tl.where((jj < ii)[None, :, :], dj >= di, dj > di) & e_mask[None, None, :]
        rank = tl.sum(larger.to(tl.int32), axis=2) + defect[:, None]
        low = rank < 0
        high = rank > D
        rank = tl.where(low, rank + (D + 1), tl.where(high, rank - (D + 1), rank))
        rem0 = tl.where(low, rem0 + (D + 1), tl.where(high, rem0 - (D + 1), rem0))

        # Barycentric weights, bary[:, k] for k in 0..D
        delta = tl.where(e_mask[None, :], (elevated - rem0) / (D + 1), 0.0)
        kk = lanes[None, :, None]
        r3 = rank[:, None, :]
        coef = (
            tl.where(kk == D - r3, 1.0, 0.0)
            - tl.where(kk == D - r3 + 1, 1.0, 0.0)
            - tl.where((kk == 0) & (r3 == 0), 1.0, 0.0)
        )
        bary = tl.sum(coef * delta[:, None, :], axis=2) + tl.where(lanes == 0, 1.0, 0.0)[None, :]

        # Level tables
        level_offset = tl.load(level_offsets_ptr + lvl)
        n_feats = tl.load(level_n_feats_ptr + lvl)
        level_size = tl.load(level_sizes_ptr + lvl)
        use_hash = tl.load(level_use_hash_ptr + lvl)
        primes = tl.load(primes_ptr + lanes, mask=d_mask, other=0)
        lo = tl.load(lo_ptr + lvl * D + lanes, mask=d_mask, other=0)
        extent = tl.load(extent_ptr + lvl * D + lanes, mask=d_mask, other=1)
        strides = tl.load(strides_ptr + lvl * D + lanes, mask=d_mask, other=0)
        class_size = tl.load(class_size_ptr + lvl)

        feat_lanes = tl.arange(0, W)
        io_offsets = n_offsets[:, None] * n_encoded_dims + p * W + feat_lanes[None, :]
        dy = tl.load(io_ptr + io_offsets, mask=n_mask[:, None], other=0.0)
        acc = tl.zeros((BLOCK_N, W), dtype=values_ptr.dtype.element_ty)
        rem0_int = rem0.to(tl.int64)

        for k in tl.static_range(D + 1):
            key = rem0_int + k - (D + 1) * (rank > D - k).to(tl.int64)
            key = tl.where(d_mask[None, :], key, 0)
            w_k = tl.sum(tl.where(lanes[None, :] == k, bary, 0.0), axis=1)

            hashed = tl.xor_sum((key * primes[None, :]) & 0xFFFFFFFF, axis=1) % level_size
            # Remainder class of the key, then its digits (key_j - class) / (D+1)
            key0 = tl.sum(tl.where(lanes[None, :] == 0, key, 0), axis=1)
            cls = (key0 % (D + 1) + (D + 1)) % (D + 1)
            q = (key - cls[:, None]) // (D + 1) - lo[None, :]
            digits = (q % extent[None, :] + extent[None, :]) % extent[None, :]
            dense = cls * class_size + tl.sum(digits * strides[None, :], axis=1)
            slot = tl.where(use_hash != 0, hashed, dense)

            addr = level_offset + slot * n_feats + cnt * W
            ptrs = addr[:, None] + feat_lanes[None, :]
            if BACKWARD:
                tl.atomic_add(grad_ptr + ptrs, w_k[:, None] * dy, mask=n_mask[:, None])
            else:
                feats = tl.load(values_ptr + ptrs, mask=n_mask[:, None], other=0.0)
                acc += w_k[:, None] * feats

        if not BACKWARD:
            tl.store(io_ptr + io_offsets, acc, mask=n_mask[:, None])

    _permuto_lattice_kernel = permuto_lattice_kernel


# ---------------------------------------------------------------------------
# Launch helpers
# ---------------------------------------------------------------------------

BLOCK_N = 64


class _LevelTables(NamedTuple):
    scales: torch.Tensor
    map_levels: torch.Tensor
    map_cnt: torch.Tensor
    offsets: torch.Tensor
    n_feats: torch.Tensor
    sizes: torch.Tensor
    use_hash: torch.Tensor
    lo: torch.Tensor
    extent: torch.Tensor
    strides: torch.Tensor
    class_sizes: torch.Tensor
    primes: torch.Tensor


@functools.lru_cache(maxsize=32)
def _level_tables(meta: EncodingMeta, device: torch.device, dtype: torch.dtype) -> _LevelTables:
    """Meta tables as device tensors, cached per meta, device and dtype."""
    D = meta.n_input_dims
    # Hashed levels never read the dense tables; their strides may not fit in int64
    lo, extent = [], []
    for hashed, l, e in zip(meta.level_use_hash, meta.level_dense_lo, meta.level_dense_extent):
        lo.append([0] * D if hashed else list(l))
        extent.append([1] * D if hashed else list(e))
    as_long = functools.partial(torch.tensor, dtype=torch.int64, device=device)
    return _LevelTables(
        scales=torch.tensor(meta.level_scales_multidim, dtype=dtype, device=device),
        map_levels=as_long(meta.map_levels),
        map_cnt=as_long(meta.map_cnt),
        offsets=as_long(meta.level_offsets[:-1]),
        n_feats=as_long(meta.level_n_feats),
        sizes=as_long(meta.level_sizes),
        use_hash=torch.tensor(meta.level_use_hash, dtype=torch.int32, device=device),
        lo=as_long(lo),
        extent=as_long(extent),
        strides=as_long([dense_strides(e) for e in extent]),
        class_sizes=as_long([math.prod(e) for e in extent]),
        primes=as_long(PRIMES[:D]),
    )


def _launch(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    io: torch.Tensor,
    grad: torch.Tensor,
    batch_index: torch.Tensor,
    shifts: torch.Tensor,
    active_levels: tuple,
    backward: bool,
):
    _ensure_kernels()

    N, D = positions.shape
    if N == 0 or not any(active_levels):
        return
    device = positions.device
    tables = _level_tables(meta, device, positions.dtype)

    has_shift = shifts is not None
    batched_shift = has_shift and shifts.dim() == 3
    dummy = torch.zeros(1, dtype=torch.int64, device=device)
    active = torch.tensor(active_levels, dtype=torch.int32, device=device)

    block_d1 = 1 << D.bit_length()  # next power of two >= D + 1
    grid = ((N + BLOCK_N - 1) // BLOCK_N, meta.n_pseudo_levels)
    _permuto_lattice_kernel[grid](
        positions.contiguous(),
        batch_index.contiguous() if batched_shift else dummy,
        shifts.contiguous() if has_shift else positions,
        tables.scales, tables.map_levels, tables.map_cnt,
        tables.offsets, tables.n_feats, tables.sizes, tables.use_hash,
        tables.lo, tables.extent, tables.strides, tables.class_sizes, tables.primes,
        active,
        lattice_values.contiguous(), io, grad,
        N, meta.n_levels, meta.n_encoded_dims,
        D=D, W=meta.n_feat_per_pseudo_lvl,
        HAS_SHIFT=has_shift, BATCHED_SHIFT=batched_shift, BACKWARD=backward,
        BLOCK_N=BLOCK_N, BLOCK_D1=block_d1,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def triton_encode_forward(
    meta: EncodingMeta,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    batch_index: torch.Tensor = None,
    shifts: torch.Tensor = None,
    active_levels: tuple = None,
) -> torch.Tensor:
    """Forward lattice encoding using Triton kernels.

    Args:
        meta: encoding tables
        positions: (N, D) positions, rotations already applied
        lattice_values: (n_params,) lattice values
        batch_index: optional (N,) batch of each point, needed for (B, L, D) shifts
        shifts: optional (L, D) or (B, L, D) random shifts
        active_levels: per-level flags, inactive levels output zeros

    Returns:
        (N, n_encoded_dims) encoded features
    """
    if active_levels is None:
        active_levels = (True,) * meta.n_levels
    out = positions.new_zeros(positions.shape[0], meta.n_encoded_dims)
    _launch(meta, positions, lattice_values, out, lattice_values,
            batch_index, shifts, active_levels, backward=False)
    return out


def triton_encode_backward_params(
    meta: EncodingMeta,
    dL_dy: torch.Tensor,
    positions: torch.Tensor,
    lattice_values: torch.Tensor,
    batch_index: torch.Tensor = None,
    shifts: torch.Tensor = None,
    active_levels: tuple = None,
) -> torch.Tensor:
    """Gradient w.r.t. the lattice values, accumulated with atomic adds.

    Args:
        meta: encoding tables
        dL_dy: (N, n_encoded_dims) upstream gradient
        positions: (N, D) positions, rotations already applied
        lattice_values: (n_params,) lattice values (for dtype and layout)
        batch_index: optional (N,) batch of each point
        shifts: optional (L, D) or (B, L, D) random shifts
        active_levels: per-level flags, inactive levels get no gradient

    Returns:
        (n_params,) gradient
    """
    if active_levels is None:
        active_levels = (True,) * meta.n_levels
    grad = torch.zeros_like(lattice_values)
    _launch(meta, positions, lattice_values, dL_dy.contiguous(), grad,
            batch_index, shifts, active_levels, backward=True)
    return grad
