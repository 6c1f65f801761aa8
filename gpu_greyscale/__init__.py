"""GPU RGB -> greyscale conversion with numba.cuda."""

from .benchmark import BenchmarkHarness, BenchmarkReport, BenchmarkSample, compare_variants
from .config import DeviceEnvironment, RunConfig, detect_environment
from .errors import (AllocationError, ConfigurationError, GreyscaleError, ImageIOError,
                     KernelError, TransferError)
from .kernels import KernelDispatcher, KernelVariant, LaunchConfig, reference_greyscale
from .memory import BufferPair, DeviceMemoryManager
from .pipeline import BatchResult, GreyscalePipeline, Image, ImageFailure

__version__ = "0.1.0"
