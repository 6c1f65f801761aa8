"""
Greyscale Kernels
=================
RGB -> greyscale on the GPU, two ways:

- NAIVE:  one thread per output pixel, reads its 3 bytes straight from
          global memory.
- SHARED: each 16x16 block first stages its tile's bytes in shared memory
          (coalesced row copies), syncs, then every thread reads its pixel
          from the staged tile.

Both produce byte-identical output. Luminance is integer fixed point:

    grey = min(255, (299*R + 587*G + 114*B + 500) // 1000)

which is round(0.299R + 0.587G + 0.114B) with ties going up.
"""

import math
from enum import Enum

import numpy as np
from numba import cuda, uint8
from numba.cuda.cudadrv.driver import CudaAPIError

from .errors import ConfigurationError, KernelError

# ============================================
# CONSTANTS
# ============================================

BLOCK_DIM = 16
MAX_BLOCK_DIM = 32          # 32x32 = 1024 threads, the CUDA per-block limit
CHANNELS = 3
TILE_ROW_BYTES = BLOCK_DIM * CHANNELS

R_WEIGHT = 299
G_WEIGHT = 587
B_WEIGHT = 114
WEIGHT_SCALE = 1000
HALF_SCALE = WEIGHT_SCALE // 2


# ============================================
# GPU KERNELS
# ============================================

@cuda.jit(device=True)
def luminance(r, g, b):
    value = (R_WEIGHT * int(r) + G_WEIGHT * int(g) + B_WEIGHT * int(b) + HALF_SCALE) // WEIGHT_SCALE
    if value > 255:
        value = 255
    return value


@cuda.jit
def greyscale_naive_kernel(rgb, grey, width, height):
    """One thread per pixel, straight from global memory."""
    x, y = cuda.grid(2)
    if x >= width or y >= height:
        return
    pixel = y * width + x
    base = pixel * CHANNELS
    grey[pixel] = luminance(rgb[base], rgb[base + 1], rgb[base + 2])


@cuda.jit
def greyscale_shared_kernel(rgb, grey, width, height):
    """
    Tile-staged variant. Launch with BLOCK_DIM x BLOCK_DIM threads.

    Row ty of the tile holds the contiguous bytes of image row y from
    column x0 onward. Thread tx copies bytes tx, tx+16, tx+32 of that row,
    so neighbouring threads touch neighbouring addresses. Bytes past the
    right edge and rows past the bottom are never read.
    """
    tile = cuda.shared.array(shape=(BLOCK_DIM, TILE_ROW_BYTES), dtype=uint8)

    tx = cuda.threadIdx.x
    ty = cuda.threadIdx.y
    x0 = cuda.blockIdx.x * BLOCK_DIM
    x = x0 + tx
    y = cuda.blockIdx.y * BLOCK_DIM + ty

    if y < height:
        row_bytes = min(width - x0, BLOCK_DIM) * CHANNELS
        row_start = (y * width + x0) * CHANNELS
        for i in range(tx, row_bytes, BLOCK_DIM):
            tile[ty, i] = rgb[row_start + i]

    # every thread in the block must reach the barrier
    cuda.syncthreads()

    if x >= width or y >= height:
        return
    col = tx * CHANNELS
    grey[y * width + x] = luminance(tile[ty, col], tile[ty, col + 1], tile[ty, col + 2])


# ============================================
# VARIANT + LAUNCH CONFIG
# ============================================

class KernelVariant(Enum):
    NAIVE = "naive"
    SHARED = "shared"

    @classmethod
    def parse(cls, name):
        aliases = {"naive": cls.NAIVE, "shared": cls.SHARED, "optimized": cls.SHARED}
        try:
            return aliases[str(name).lower()]
        except KeyError:
            raise ConfigurationError(
                f"Unknown kernel variant '{name}' (expected naive or optimized)") from None

    @property
    def kernel(self):
        return _KERNELS[self]


_KERNELS = {
    KernelVariant.NAIVE: greyscale_naive_kernel,
    KernelVariant.SHARED: greyscale_shared_kernel,
}


def ceil_div(a, b):
    return (a + b - 1) // b


def block_side_from_threads(threads):
    """Square block side for a threads-per-block count (256 -> 16)."""
    side = math.isqrt(threads) if threads > 0 else 0
    if side * side != threads or not 1 <= side <= MAX_BLOCK_DIM:
        raise ConfigurationError(
            f"Block dimension {threads} must be a perfect square between 1 and "
            f"{MAX_BLOCK_DIM * MAX_BLOCK_DIM} threads (e.g. 256 for 16x16)")
    return side


class LaunchConfig:
    """Block and grid shape covering a width x height image."""

    def __init__(self, width, height, block_dim=BLOCK_DIM):
        self.width = width
        self.height = height
        self.block = (block_dim, block_dim)
        self.grid = (ceil_div(width, block_dim), ceil_div(height, block_dim))

    @property
    def threads(self):
        return self.grid[0] * self.grid[1] * self.block[0] * self.block[1]

    def __repr__(self):
        return f"LaunchConfig(grid={self.grid}, block={self.block})"


# ============================================
# DISPATCH
# ============================================

class KernelDispatcher:
    """
    Launches one kernel variant. The variant is fixed at construction so a
    whole batch runs the same code path.
    """

    def __init__(self, variant=KernelVariant.NAIVE, block_dim=BLOCK_DIM):
        if not isinstance(variant, KernelVariant):
            variant = KernelVariant.parse(variant)
        if not 1 <= block_dim <= MAX_BLOCK_DIM:
            raise ConfigurationError(
                f"Block side {block_dim} out of range 1..{MAX_BLOCK_DIM}")
        if variant is KernelVariant.SHARED and block_dim != BLOCK_DIM:
            raise ConfigurationError(
                f"Shared-memory kernel needs {BLOCK_DIM}x{BLOCK_DIM} blocks, got "
                f"{block_dim}x{block_dim}")
        self.variant = variant
        self.block_dim = block_dim
        self._kernel = variant.kernel

    def launch_config(self, width, height):
        return LaunchConfig(width, height, self.block_dim)

    def convert(self, buffers, stream=0):
        """Enqueue the kernel on `stream`, writing into buffers.d_grey."""
        cfg = self.launch_config(buffers.width, buffers.height)
        try:
            self._kernel[cfg.grid, cfg.block, stream](
                buffers.d_rgb, buffers.d_grey, buffers.width, buffers.height)
        except CudaAPIError as exc:
            raise KernelError(
                f"{self.variant.value} kernel failed on {buffers.width}x{buffers.height} "
                f"image with {cfg}", status=getattr(exc, "code", None)) from exc
        return cfg


# ============================================
# CPU REFERENCE
# ============================================

def reference_greyscale(rgb, width, height):
    """numpy version of the kernels' formula, used for verification."""
    pixels = np.asarray(rgb, dtype=np.uint8).reshape(height * width, CHANNELS).astype(np.int64)
    value = (R_WEIGHT * pixels[:, 0] + G_WEIGHT * pixels[:, 1] + B_WEIGHT * pixels[:, 2]
             + HALF_SCALE) // WEIGHT_SCALE
    return np.minimum(value, 255).astype(np.uint8)
