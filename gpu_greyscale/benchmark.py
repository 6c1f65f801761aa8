"""
Benchmark Harness
=================
Times transfer-in, compute and transfer-out per image and aggregates them
over a batch.

Device work is queued asynchronously, so a stage is only timed once its
completion signal has been seen:
- "event": CUDA events recorded on the image's stream around the operation,
  then the end event is synchronised.
- "wall":  perf_counter around the operation followed by stream.synchronize().
"""

import csv
import json
import time
from collections import namedtuple

import numpy as np
from numba import cuda
from scipy import stats

from .kernels import KernelDispatcher, KernelVariant, reference_greyscale
from .memory import DeviceMemoryManager

STAGES = ("transfer_in", "compute", "transfer_out")


class BenchmarkSample(namedtuple("BenchmarkSample",
                                 ["image_id", "nbytes", "transfer_in_ms",
                                  "compute_ms", "transfer_out_ms"])):
    """Stage timings for one image. Immutable once created."""
    __slots__ = ()

    @property
    def total_ms(self):
        return self.transfer_in_ms + self.compute_ms + self.transfer_out_ms

    def stage_ms(self, stage):
        return getattr(self, f"{stage}_ms")


def quartiles(times_ms):
    """(q1, median, q3) of a sequence of stage times."""
    q1, median, q3 = np.percentile(np.asarray(times_ms, dtype=np.float64), [25, 50, 75])
    return float(q1), float(median), float(q3)


# ============================================
# STAGE TIMING
# ============================================

class StageSpan:
    """Start/end markers for one stage; read elapsed_ms() after completion."""

    def __init__(self, clock, stream):
        self.clock = clock
        self.stream = stream
        if clock == "event":
            self.start_event = cuda.event(timing=True)
            self.end_event = cuda.event(timing=True)
            self.start_event.record(stream)
        else:
            self.start_time = time.perf_counter()
        self.end_time = None

    def close(self, wait=True):
        if self.clock == "event":
            self.end_event.record(self.stream)
            if wait:
                self.end_event.synchronize()
        else:
            self.stream.synchronize()
            self.end_time = time.perf_counter()

    def elapsed_ms(self):
        if self.clock == "event":
            self.end_event.synchronize()
            return self.start_event.elapsed_time(self.end_event)
        return (self.end_time - self.start_time) * 1000


class BenchmarkHarness:
    """
    Collects one BenchmarkSample per image, in processing order.

    time_stage() keeps each stage's time under (image_id, name) until
    finish_image() turns the three of them into a sample.
    """

    def __init__(self, clock="event"):
        self.clock = clock
        self.samples = []
        self.pending = {}
        self.batch_start = None
        self.batch_end = None

    def start_batch(self):
        self.samples = []
        self.pending = {}
        self.batch_start = time.perf_counter()
        self.batch_end = None

    def end_batch(self):
        self.batch_end = time.perf_counter()

    def open_span(self, stream, clock=None):
        return StageSpan(clock or self.clock, stream)

    def time_stage(self, name, image_id, operation, stream):
        """
        Run `operation` (which enqueues work on `stream`) and return the
        elapsed milliseconds once that work has completed.
        """
        if name not in STAGES:
            raise ValueError(f"Unknown stage '{name}' (expected one of {STAGES})")
        span = self.open_span(stream)
        operation()
        span.close(wait=True)
        elapsed = span.elapsed_ms()
        self.pending.setdefault(image_id, {})[name] = elapsed
        return elapsed

    def finish_image(self, image_id, nbytes):
        """Turn the stage times collected for `image_id` into a sample."""
        timings = self.pending.pop(image_id)
        missing = [stage for stage in STAGES if stage not in timings]
        if missing:
            raise ValueError(f"{image_id}: no timing for {', '.join(missing)}")
        return self.record(image_id, nbytes, *(timings[stage] for stage in STAGES))

    def discard(self, image_id):
        self.pending.pop(image_id, None)

    def record(self, image_id, nbytes, transfer_in_ms, compute_ms, transfer_out_ms):
        sample = BenchmarkSample(image_id, nbytes, float(transfer_in_ms),
                                 float(compute_ms), float(transfer_out_ms))
        self.samples.append(sample)
        return sample

    def report(self):
        wall_s = None
        if self.batch_start is not None and self.batch_end is not None:
            wall_s = self.batch_end - self.batch_start
        return BenchmarkReport(self.samples, wall_s)


# ============================================
# AGGREGATION
# ============================================

class BenchmarkReport:
    """Batch-level view over a sequence of BenchmarkSamples."""

    def __init__(self, samples, wall_s=None):
        self.samples = tuple(samples)
        self.wall_s = wall_s

    @property
    def num_images(self):
        return len(self.samples)

    @property
    def total_bytes(self):
        return sum(s.nbytes for s in self.samples)

    def stage_times(self, stage):
        return np.array([s.stage_ms(stage) for s in self.samples], dtype=np.float64)

    def stage_summary(self, stage):
        times = self.stage_times(stage)
        if times.size == 0:
            return {'total_ms': 0.0, 'mean_ms': 0.0, 'median_ms': 0.0, 'iqr_ms': 0.0,
                    'p95_ms': 0.0}
        q1, median, q3 = quartiles(times)
        return {
            'total_ms': float(times.sum()),
            'mean_ms': float(times.mean()),
            'median_ms': median,
            'iqr_ms': q3 - q1,
            'p95_ms': float(np.percentile(times, 95)),
        }

    @property
    def device_ms(self):
        return sum(s.total_ms for s in self.samples)

    def throughput(self, seconds):
        if not seconds or seconds <= 0:
            return 0.0, 0.0
        return self.num_images / seconds, self.total_bytes / seconds

    @property
    def device_throughput(self):
        """(images/s, bytes/s) over time spent in the three stages."""
        return self.throughput(self.device_ms / 1000)

    @property
    def end_to_end_throughput(self):
        """(images/s, bytes/s) over the batch's wall time, decode/encode included."""
        return self.throughput(self.wall_s)

    def to_dict(self):
        images_s, bytes_s = self.device_throughput
        e2e_images_s, e2e_bytes_s = self.end_to_end_throughput
        return {
            'num_images': self.num_images,
            'total_bytes': self.total_bytes,
            'device_ms': self.device_ms,
            'wall_s': self.wall_s,
            'images_per_s': images_s,
            'bytes_per_s': bytes_s,
            'e2e_images_per_s': e2e_images_s,
            'e2e_bytes_per_s': e2e_bytes_s,
            'stages': {stage: self.stage_summary(stage) for stage in STAGES},
        }


def format_report(report, title="PERFORMANCE SUMMARY"):
    lines = []
    lines.append("=" * 72)
    lines.append(title)
    lines.append("=" * 72)
    lines.append(f"Images: {report.num_images}")
    lines.append(f"Total bytes: {report.total_bytes:,}")
    lines.append("")
    lines.append(f"{'Stage':<15} {'Total':>10} {'Mean':>10} {'Median':>10} {'IQR':>10} {'P95':>10}")
    lines.append("-" * 72)
    for stage in STAGES:
        s = report.stage_summary(stage)
        lines.append(f"{stage:<15} {s['total_ms']:>8.3f}ms {s['mean_ms']:>8.3f}ms "
                     f"{s['median_ms']:>8.3f}ms {s['iqr_ms']:>8.3f}ms {s['p95_ms']:>8.3f}ms")
    lines.append("-" * 72)
    images_s, bytes_s = report.device_throughput
    lines.append(f"Device time:  {report.device_ms:.3f} ms")
    lines.append(f"  Throughput: {images_s:.1f} images/s, {bytes_s / 1e6:.1f} MB/s")
    if report.wall_s:
        e2e_images_s, e2e_bytes_s = report.end_to_end_throughput
        lines.append(f"Wall time:    {report.wall_s * 1000:.3f} ms")
        lines.append(f"  Throughput: {e2e_images_s:.1f} images/s, {e2e_bytes_s / 1e6:.1f} MB/s")
    lines.append("=" * 72)
    return "\n".join(lines)


def save_csv(samples, path):
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(["image_id", "nbytes", "transfer_in_ms", "compute_ms",
                         "transfer_out_ms", "total_ms"])
        for s in samples:
            writer.writerow([s.image_id, s.nbytes, f"{s.transfer_in_ms:.4f}",
                             f"{s.compute_ms:.4f}", f"{s.transfer_out_ms:.4f}",
                             f"{s.total_ms:.4f}"])
    return path


def save_json(report, path):
    with open(path, 'w') as f:
        json.dump(report.to_dict(), f, indent=2)
    return path


# ============================================
# NAIVE vs SHARED
# ============================================

def compare_variants(width, height, runs=10, warmup=2, seed=42, clock="event"):
    """
    Time the compute stage of both kernels on the same synthetic image.

    Returns means, std, 95% CIs, a t-test, the speedup of SHARED over NAIVE
    and whether both outputs matched the CPU reference.
    """
    rng = np.random.default_rng(seed)
    rgb = rng.integers(0, 256, width * height * 3, dtype=np.uint8)
    expected = reference_greyscale(rgb, width, height)

    memory = DeviceMemoryManager()
    harness = BenchmarkHarness(clock)
    stream = cuda.stream()

    times = {}
    outputs = {}
    blank = np.zeros(width * height, dtype=np.uint8)
    with memory.allocate(width, height) as pair:
        memory.transfer_to_device(pair, rgb, stream)
        stream.synchronize()
        for variant in (KernelVariant.NAIVE, KernelVariant.SHARED):
            # each variant starts from an empty output buffer
            pair.d_grey.copy_to_device(blank, stream=stream)
            dispatcher = KernelDispatcher(variant)
            for _ in range(warmup):
                dispatcher.convert(pair, stream)
            stream.synchronize()

            variant_times = []
            for _ in range(runs):
                variant_times.append(harness.time_stage(
                    "compute", variant.value, lambda: dispatcher.convert(pair, stream), stream))
            harness.discard(variant.value)
            times[variant] = variant_times
            outputs[variant] = memory.transfer_from_device(pair, stream)
            stream.synchronize()

    naive = np.array(times[KernelVariant.NAIVE])
    shared = np.array(times[KernelVariant.SHARED])
    result = {
        'width': width,
        'height': height,
        'runs': runs,
        'naive_ms': float(naive.mean()),
        'naive_std': float(naive.std()),
        'shared_ms': float(shared.mean()),
        'shared_std': float(shared.std()),
        'identical': bool(np.array_equal(outputs[KernelVariant.NAIVE], expected)
                          and np.array_equal(outputs[KernelVariant.SHARED], expected)),
    }
    result['speedup'] = result['naive_ms'] / result['shared_ms'] if result['shared_ms'] > 0 else float('nan')

    if runs > 1 and naive.std() > 0 and shared.std() > 0:
        result['naive_ci'] = tuple(float(v) for v in stats.t.interval(
            0.95, runs - 1, loc=naive.mean(), scale=stats.sem(naive)))
        result['shared_ci'] = tuple(float(v) for v in stats.t.interval(
            0.95, runs - 1, loc=shared.mean(), scale=stats.sem(shared)))
        t_stat, p_value = stats.ttest_ind(naive, shared)
        result['t_stat'] = float(t_stat)
        result['p_value'] = float(p_value)
    else:
        result['naive_ci'] = result['shared_ci'] = None
        result['t_stat'] = result['p_value'] = None
    return result
