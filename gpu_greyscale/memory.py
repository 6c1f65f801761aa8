"""
Device Memory
=============
Input (w*h*3) and output (w*h) device buffers for one image, plus the
host <-> device copies. A BufferPair is bound to one image's dimensions and
is released when its `with` block exits, whatever happened inside it.
"""

import numpy as np
from numba import cuda
from numba.cuda.cudadrv.driver import CudaAPIError

from .errors import AllocationError, TransferError
from .kernels import CHANNELS


class BufferPair:
    """Device-resident RGB input and greyscale output for one image."""

    def __init__(self, manager, width, height, d_rgb, d_grey):
        self.manager = manager
        self.width = width
        self.height = height
        self.d_rgb = d_rgb
        self.d_grey = d_grey

    @property
    def rgb_nbytes(self):
        return self.width * self.height * CHANNELS

    @property
    def grey_nbytes(self):
        return self.width * self.height

    @property
    def nbytes(self):
        return self.rgb_nbytes + self.grey_nbytes

    @property
    def released(self):
        return self.d_rgb is None

    def check_live(self):
        if self.released:
            raise ValueError(f"{self!r} was already released")

    def release(self):
        self.manager.release(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.manager.release(self)
        return False

    def __repr__(self):
        state = "released" if self.released else "live"
        return f"BufferPair({self.width}x{self.height}, {state})"


class DeviceMemoryManager:
    """
    Allocates, fills, drains and frees BufferPairs.

    Keeps a count of live pairs and bytes so callers can check that every
    path gave its memory back.
    """

    def __init__(self):
        self.live_pairs = 0
        self.bytes_in_use = 0
        self.peak_bytes = 0

    def allocate(self, width, height):
        if width <= 0 or height <= 0:
            raise AllocationError(f"Cannot allocate buffers for a {width}x{height} image")

        num_pixels = width * height
        try:
            d_rgb = cuda.device_array(num_pixels * CHANNELS, dtype=np.uint8)
        except (CudaAPIError, MemoryError) as exc:
            raise AllocationError(
                f"Out of device memory for {width}x{height} input "
                f"({num_pixels * CHANNELS:,} bytes)") from exc
        try:
            d_grey = cuda.device_array(num_pixels, dtype=np.uint8)
        except (CudaAPIError, MemoryError) as exc:
            # no half-allocated pair leaves this function
            del d_rgb
            raise AllocationError(
                f"Out of device memory for {width}x{height} output "
                f"({num_pixels:,} bytes)") from exc

        pair = BufferPair(self, width, height, d_rgb, d_grey)
        self.live_pairs += 1
        self.bytes_in_use += pair.nbytes
        self.peak_bytes = max(self.peak_bytes, self.bytes_in_use)
        return pair

    def transfer_to_device(self, pair, host_rgb, stream=0):
        pair.check_live()
        host_rgb = np.ascontiguousarray(host_rgb, dtype=np.uint8).reshape(-1)
        if host_rgb.size != pair.rgb_nbytes:
            raise ValueError(
                f"Host image has {host_rgb.size} bytes, buffers expect "
                f"{pair.rgb_nbytes} for {pair.width}x{pair.height}x{CHANNELS}")
        try:
            pair.d_rgb.copy_to_device(host_rgb, stream=stream)
        except CudaAPIError as exc:
            raise TransferError(
                f"Host to device copy of {host_rgb.size:,} bytes failed",
                stage="transfer-in") from exc

    def transfer_from_device(self, pair, stream=0, out=None):
        """
        Copy the greyscale buffer back. With a stream and a pinned `out`
        the copy is asynchronous; the caller syncs the stream before reading.
        """
        pair.check_live()
        try:
            if out is None:
                return pair.d_grey.copy_to_host(stream=stream)
            return pair.d_grey.copy_to_host(out, stream=stream)
        except CudaAPIError as exc:
            raise TransferError(
                f"Device to host copy of {pair.grey_nbytes:,} bytes failed",
                stage="transfer-out") from exc

    def pinned_output(self, pair):
        """Page-locked host array sized for the pair's greyscale output."""
        try:
            return cuda.pinned_array(pair.grey_nbytes, dtype=np.uint8)
        except (CudaAPIError, MemoryError) as exc:
            raise AllocationError(
                f"Could not pin {pair.grey_nbytes:,} host bytes") from exc

    def release(self, pair):
        if pair.released:
            return
        self.live_pairs -= 1
        self.bytes_in_use -= pair.nbytes
        # numba frees device memory once the last reference goes
        pair.d_rgb = None
        pair.d_grey = None
