"""
Batch Orchestrator
==================
Drives allocate -> transfer-in -> kernel -> transfer-out -> write -> release
for one image or a whole batch.

Each image runs on its own CUDA stream, so stage ordering comes from the
stream rather than host-side polling. In a batch, a failing image is
recorded and the loop moves on; process_image on its own lets the error
propagate.
"""

from collections import namedtuple

import numpy as np
from numba import cuda
from numba.cuda.cudadrv.driver import CudaAPIError

from .benchmark import BenchmarkHarness
from .config import RunConfig
from .errors import (AllocationError, ConfigurationError, ImageIOError,
                     KernelError, TransferError)
from .kernels import CHANNELS, KernelDispatcher
from .memory import DeviceMemoryManager

PER_IMAGE_ERRORS = (ImageIOError, AllocationError, TransferError, KernelError)


class Image:
    """Decoded RGB image: flat interleaved uint8 bytes, width*height*3 long."""

    def __init__(self, identifier, rgb, width, height):
        self.identifier = identifier
        self.width = width
        self.height = height
        self.rgb = np.ascontiguousarray(rgb, dtype=np.uint8).reshape(-1)
        if self.rgb.size != width * height * CHANNELS:
            raise ValueError(
                f"{identifier}: {self.rgb.size} bytes do not match {width}x{height}x{CHANNELS}")

    @property
    def nbytes(self):
        return self.rgb.size

    def load(self):
        return self

    def __repr__(self):
        return f"Image({self.identifier!r}, {self.width}x{self.height})"


ImageFailure = namedtuple("ImageFailure", ["identifier", "kind", "stage", "message"])

_InFlight = namedtuple("_InFlight", ["image", "pair", "stream", "host_out", "spans"])


class BatchResult:
    def __init__(self):
        self.successes = []
        self.failures = []
        self.outputs = {}
        self.samples = ()
        self.report = None

    @property
    def succeeded(self):
        return len(self.successes)

    @property
    def failed(self):
        return len(self.failures)

    @property
    def ok(self):
        return not self.failures

    def add_success(self, identifier, grey=None):
        self.successes.append(identifier)
        if grey is not None:
            self.outputs[identifier] = grey

    def add_failure(self, identifier, exc):
        self.failures.append(ImageFailure(identifier, exc.kind, exc.stage, str(exc)))

    def failure_reasons(self):
        reasons = {}
        for failure in self.failures:
            reasons[failure.kind] = reasons.get(failure.kind, 0) + 1
        return reasons


def _device_error(stage, exc):
    label = stage.replace('_', '-')
    if stage == "compute":
        return KernelError(f"Kernel execution failed: {exc}", status=getattr(exc, "code", None))
    return TransferError(f"{label} failed: {exc}", stage=label)


class _RawImage:
    """Batch source for an (identifier, rgb, width, height) tuple."""

    def __init__(self, item):
        self.identifier = item[0]
        self._item = item

    def load(self):
        try:
            return Image(*self._item)
        except (TypeError, ValueError) as exc:
            raise ImageIOError(str(exc), stage="decode") from exc


def _as_image_source(item):
    if isinstance(item, tuple):
        return _RawImage(item)
    return item


class GreyscalePipeline:
    """
    Args:
        config: RunConfig, built once for the whole run
        writer: callable(identifier, grey, width, height); None keeps
                outputs in BatchResult.outputs
        memory: DeviceMemoryManager to allocate from
    """

    def __init__(self, config=None, writer=None, memory=None):
        if config is None:
            config = RunConfig()
        if not config.environment.available:
            raise ConfigurationError("No CUDA device available")
        self.config = config
        self.writer = writer
        self.memory = memory or DeviceMemoryManager()
        self.dispatcher = KernelDispatcher(config.variant, config.block_dim)
        self.harness = BenchmarkHarness(config.clock) if config.benchmark else None
        self._warmed_up = False

    # ----------------------------------------
    # helpers
    # ----------------------------------------

    def warm_up(self):
        """One launch on a 1x1 image so JIT compilation isn't billed to a real image."""
        stream = cuda.stream()
        with self.memory.allocate(1, 1) as pair:
            self.dispatcher.convert(pair, stream)
            stream.synchronize()
        self._warmed_up = True

    def _maybe_warm_up(self):
        if self.harness is not None and self.config.warmup and not self._warmed_up:
            self.warm_up()

    def _stage(self, stage, image_id, operation, stream):
        """Run one stage; with benchmarking on, time it through the harness."""
        try:
            if self.harness is None:
                operation()
            else:
                self.harness.time_stage(stage, image_id, operation, stream)
        except CudaAPIError as exc:
            raise _device_error(stage, exc) from exc

    def _synchronize(self, stream, stage):
        try:
            stream.synchronize()
        except CudaAPIError as exc:
            raise _device_error(stage, exc) from exc

    # ----------------------------------------
    # single image
    # ----------------------------------------

    def process_image(self, image, writer=None):
        """
        Convert one image and hand it to the writer. Errors propagate.
        With benchmarking on, a sample is kept only once the writer has
        accepted the result.
        """
        self._maybe_warm_up()
        stream = cuda.stream()
        image_id = image.identifier

        try:
            with self.memory.allocate(image.width, image.height) as pair:
                grey = np.empty(pair.grey_nbytes, dtype=np.uint8)
                self._stage("transfer_in", image_id,
                            lambda: self.memory.transfer_to_device(pair, image.rgb, stream), stream)
                self._stage("compute", image_id,
                            lambda: self.dispatcher.convert(pair, stream), stream)
                self._stage("transfer_out", image_id,
                            lambda: self.memory.transfer_from_device(pair, stream, out=grey), stream)
                if self.harness is None:
                    self._synchronize(stream, "transfer_out")

                if writer is not None:
                    writer(image_id, grey, image.width, image.height)
        except Exception:
            if self.harness is not None:
                self.harness.discard(image_id)
            raise
        if self.harness is not None:
            self.harness.finish_image(image_id, image.nbytes)
        return grey

    # ----------------------------------------
    # batch
    # ----------------------------------------

    def process_batch(self, images, writer=None):
        """
        Process every image in order. `images` holds Image objects,
        (identifier, rgb, width, height) tuples, or lazy sources with an
        `identifier` and a `load()` that returns an Image.
        """
        if writer is None:
            writer = self.writer
        result = BatchResult()
        self._maybe_warm_up()
        if self.harness is not None:
            self.harness.start_batch()

        sources = (_as_image_source(item) for item in images)
        if self.config.pipelined:
            self._run_pipelined(sources, writer, result)
        else:
            for source in sources:
                try:
                    image = source.load()
                    grey = self.process_image(image, writer)
                except PER_IMAGE_ERRORS as exc:
                    result.add_failure(source.identifier, exc)
                else:
                    result.add_success(image.identifier, grey if writer is None else None)

        if self.harness is not None:
            self.harness.end_batch()
            result.samples = tuple(self.harness.samples)
            result.report = self.harness.report()
        return result

    def _run_pipelined(self, sources, writer, result):
        # image N completes only after N+1 has been queued, so N's
        # transfer-out overlaps N+1's transfer-in on separate streams
        in_flight = None
        for source in sources:
            try:
                issued = self._issue(source.load())
            except PER_IMAGE_ERRORS as exc:
                result.add_failure(source.identifier, exc)
                continue
            if in_flight is not None:
                self._complete(in_flight, writer, result)
            in_flight = issued
        if in_flight is not None:
            self._complete(in_flight, writer, result)

    def _issue(self, image):
        """Queue all three stages on a fresh stream without waiting."""
        stream = cuda.stream()
        pair = self.memory.allocate(image.width, image.height)
        spans = []
        try:
            host_out = self.memory.pinned_output(pair)
            stages = (
                lambda: self.memory.transfer_to_device(pair, image.rgb, stream),
                lambda: self.dispatcher.convert(pair, stream),
                lambda: self.memory.transfer_from_device(pair, stream, out=host_out),
            )
            for operation in stages:
                span = None
                if self.harness is not None:
                    span = self.harness.open_span(stream, clock="event")
                operation()
                if span is not None:
                    span.close(wait=False)
                    spans.append(span)
        except Exception:
            pair.release()
            raise
        return _InFlight(image, pair, stream, host_out, spans)

    def _complete(self, flight, writer, result):
        image = flight.image
        try:
            with flight.pair:
                self._synchronize(flight.stream, "transfer_out")
                grey = np.array(flight.host_out)
                if writer is not None:
                    writer(image.identifier, grey, image.width, image.height)
                if self.harness is not None:
                    t_in, t_compute, t_out = (span.elapsed_ms() for span in flight.spans)
                    self.harness.record(image.identifier, image.nbytes, t_in, t_compute, t_out)
        except PER_IMAGE_ERRORS as exc:
            result.add_failure(image.identifier, exc)
        else:
            result.add_success(image.identifier, grey if writer is None else None)
