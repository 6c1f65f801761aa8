"""
Run configuration
=================
Everything the pipeline needs to know about the machine and the run is
collected here once and handed to GreyscalePipeline at construction.
"""

from numba import config as numba_config
from numba import cuda

from .errors import ConfigurationError
from .kernels import BLOCK_DIM, KernelVariant

CLOCKS = ("event", "wall")


class DeviceEnvironment:
    """What CUDA device (if any) this process can use."""

    def __init__(self, available, simulated=False, device_name=None,
                 compute_capability=None, free_bytes=None, total_bytes=None):
        self.available = available
        self.simulated = simulated
        self.device_name = device_name
        self.compute_capability = compute_capability
        self.free_bytes = free_bytes
        self.total_bytes = total_bytes

    def describe(self):
        if not self.available:
            return "no CUDA device"
        name = self.device_name or "unknown device"
        if self.simulated:
            return f"{name} (numba CUDA simulator)"
        text = name
        if self.compute_capability:
            text += f", sm_{self.compute_capability[0]}{self.compute_capability[1]}"
        if self.total_bytes:
            text += f", {self.free_bytes / 1e9:.1f}/{self.total_bytes / 1e9:.1f} GB free"
        return text


def detect_environment():
    simulated = bool(numba_config.ENABLE_CUDASIM)
    if not cuda.is_available():
        return DeviceEnvironment(available=False, simulated=simulated)
    if simulated:
        return DeviceEnvironment(available=True, simulated=True, device_name="CUDA simulator")

    context = cuda.current_context()
    device = context.device
    name = getattr(device, "name", None)
    if isinstance(name, bytes):
        name = name.decode()
    free_bytes, total_bytes = context.get_memory_info()
    return DeviceEnvironment(
        available=True,
        device_name=name,
        compute_capability=getattr(device, "compute_capability", None),
        free_bytes=free_bytes,
        total_bytes=total_bytes,
    )


class RunConfig:
    """
    Args:
        variant: KernelVariant (or its name) used for every image of the run
        block_dim: square block side
        benchmark: time each stage and build a report
        clock: "event" (CUDA events) or "wall" (perf_counter + sync);
               None picks events on a real device, wall time on the simulator
        pipelined: overlap image N's transfer-out with N+1's transfer-in
        warmup: launch the kernel once before the first timed image
        environment: DeviceEnvironment, detected if not given
    """

    def __init__(self, variant=KernelVariant.NAIVE, block_dim=BLOCK_DIM, benchmark=False,
                 clock=None, pipelined=False, warmup=True, environment=None):
        if not isinstance(variant, KernelVariant):
            variant = KernelVariant.parse(variant)
        if environment is None:
            environment = detect_environment()
        if clock is None:
            clock = "wall" if environment.simulated else "event"
        if clock not in CLOCKS:
            raise ConfigurationError(f"Unknown clock '{clock}' (expected one of {CLOCKS})")

        self.variant = variant
        self.block_dim = block_dim
        self.benchmark = benchmark
        self.clock = clock
        self.pipelined = pipelined
        self.warmup = warmup
        self.environment = environment

    def __repr__(self):
        return (f"RunConfig(variant={self.variant.value}, block={self.block_dim}x{self.block_dim}, "
                f"benchmark={self.benchmark}, clock={self.clock}, pipelined={self.pipelined})")
