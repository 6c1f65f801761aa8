import csv
import json

import pytest
from numba import config as numba_config
from numba import cuda

from gpu_greyscale import kernels as kernels_module
from gpu_greyscale.benchmark import (BenchmarkHarness, BenchmarkReport, BenchmarkSample,
                                     compare_variants, format_report, quartiles,
                                     save_csv, save_json)
from gpu_greyscale.kernels import KernelVariant


def make_samples():
    return [
        BenchmarkSample("a.png", 300, 100.0, 200.0, 100.0),
        BenchmarkSample("b.png", 100, 150.0, 300.0, 150.0),
    ]


class RecordingStream:
    def __init__(self, log):
        self.log = log

    def synchronize(self):
        self.log.append("sync")


def test_sample_is_immutable():
    sample = make_samples()[0]
    assert sample.total_ms == 400.0
    assert sample.stage_ms("compute") == 200.0
    with pytest.raises(AttributeError):
        sample.compute_ms = 0.0


def test_time_stage_waits_for_completion():
    log = []
    harness = BenchmarkHarness(clock="wall")
    elapsed = harness.time_stage("compute", "x", lambda: log.append("launch"),
                                 RecordingStream(log))
    assert log == ["launch", "sync"]
    assert elapsed >= 0
    assert harness.pending == {"x": {"compute": elapsed}}


def test_finish_image_builds_sample_from_timed_stages():
    harness = BenchmarkHarness(clock="wall")
    stream = RecordingStream([])
    harness.start_batch()
    for stage in ("transfer_in", "compute", "transfer_out"):
        harness.time_stage(stage, "img", lambda: None, stream)
    sample = harness.finish_image("img", 48)
    assert sample.image_id == "img"
    assert sample.nbytes == 48
    assert harness.samples == [sample]
    assert harness.pending == {}


def test_finish_image_needs_every_stage():
    harness = BenchmarkHarness(clock="wall")
    harness.time_stage("compute", "img", lambda: None, RecordingStream([]))
    with pytest.raises(ValueError, match="transfer_in"):
        harness.finish_image("img", 48)


def test_time_stage_rejects_unknown_stage():
    harness = BenchmarkHarness(clock="wall")
    with pytest.raises(ValueError):
        harness.time_stage("decode", "img", lambda: None, RecordingStream([]))


def test_harness_records_in_order():
    harness = BenchmarkHarness(clock="wall")
    harness.start_batch()
    harness.record("one", 12, 1, 2, 3)
    harness.record("two", 24, 1, 2, 3)
    harness.end_batch()
    report = harness.report()
    assert [s.image_id for s in report.samples] == ["one", "two"]
    assert report.samples[0].compute_ms == 2.0
    assert report.wall_s >= 0


def test_report_aggregates_stages_and_throughput():
    report = BenchmarkReport(make_samples(), wall_s=4.0)
    assert report.num_images == 2
    assert report.total_bytes == 400
    assert report.device_ms == 1000.0

    compute = report.stage_summary("compute")
    assert compute['total_ms'] == 500.0
    assert compute['mean_ms'] == 250.0
    assert compute['median_ms'] == 250.0
    assert compute['iqr_ms'] == 50.0

    images_s, bytes_s = report.device_throughput
    assert images_s == pytest.approx(2.0)
    assert bytes_s == pytest.approx(400.0)
    e2e_images_s, e2e_bytes_s = report.end_to_end_throughput
    assert e2e_images_s == pytest.approx(0.5)
    assert e2e_bytes_s == pytest.approx(100.0)


def test_empty_report_is_all_zero():
    report = BenchmarkReport([])
    assert report.stage_summary("transfer_in")['total_ms'] == 0.0
    assert report.device_throughput == (0.0, 0.0)
    assert report.end_to_end_throughput == (0.0, 0.0)


def test_format_report_lists_every_stage():
    text = format_report(BenchmarkReport(make_samples(), wall_s=4.0))
    for stage in ("transfer_in", "compute", "transfer_out"):
        assert stage in text
    assert "images/s" in text
    assert "Wall time" in text
    assert "IQR" in text


def test_save_csv_and_json(tmp_path):
    samples = make_samples()
    csv_path = save_csv(samples, tmp_path / "samples.csv")
    with open(csv_path, newline='') as f:
        rows = list(csv.DictReader(f))
    assert [r["image_id"] for r in rows] == ["a.png", "b.png"]
    assert float(rows[1]["total_ms"]) == pytest.approx(600.0)

    json_path = save_json(BenchmarkReport(samples, wall_s=2.0), tmp_path / "report.json")
    with open(json_path) as f:
        data = json.load(f)
    assert data['num_images'] == 2
    assert data['stages']['transfer_out']['total_ms'] == pytest.approx(250.0)
    assert data['e2e_images_per_s'] == pytest.approx(1.0)


def test_quartiles():
    assert quartiles([1.0, 2.0, 3.0, 4.0, 5.0]) == (2.0, 3.0, 4.0)


def test_compare_variants_small_image():
    result = compare_variants(20, 18, runs=2, warmup=1, clock="wall")
    assert result['identical']
    assert result['runs'] == 2
    assert result['naive_ms'] >= 0 and result['shared_ms'] >= 0
    for key in ('naive_ci', 'shared_ci', 't_stat', 'p_value', 'speedup'):
        assert key in result


@pytest.mark.skipif(numba_config.ENABLE_CUDASIM, reason="needs a real GPU for timing")
def test_compute_time_grows_with_image_size():
    small = compare_variants(512, 512, runs=10, warmup=3)
    large = compare_variants(2048, 2048, runs=10, warmup=3)
    assert large['naive_ms'] > small['naive_ms']
    assert large['shared_ms'] > small['shared_ms']


def test_compare_variants_catches_a_kernel_that_writes_nothing(monkeypatch):
    @cuda.jit
    def idle_kernel(rgb, grey, width, height):
        pass

    monkeypatch.setitem(kernels_module._KERNELS, KernelVariant.SHARED, idle_kernel)
    result = compare_variants(20, 18, runs=1, warmup=0, clock="wall")
    assert not result['identical']
