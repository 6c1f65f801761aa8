import numpy as np
import pytest

from gpu_greyscale import pipeline as pipeline_module
from gpu_greyscale.codec import image_files
from gpu_greyscale.config import DeviceEnvironment, RunConfig
from gpu_greyscale.errors import (AllocationError, ConfigurationError, ImageIOError,
                                  KernelError, TransferError)
from gpu_greyscale.kernels import KernelVariant, reference_greyscale
from gpu_greyscale.memory import DeviceMemoryManager
from gpu_greyscale.pipeline import GreyscalePipeline, Image

from faults import CUDA_ERROR_ILLEGAL_ADDRESS, api_error


def make_images(random_rgb, sizes):
    return [Image(f"img{i}", random_rgb(w, h, seed=i), w, h) for i, (w, h) in enumerate(sizes)]


class FaultyMemory(DeviceMemoryManager):
    """Fails one stage for images of a given width."""

    def __init__(self, fail_width, stage):
        super().__init__()
        self.fail_width = fail_width
        self.stage = stage

    def allocate(self, width, height):
        if self.stage == "allocate" and width == self.fail_width:
            raise AllocationError("injected out of memory")
        return super().allocate(width, height)

    def transfer_to_device(self, pair, host_rgb, stream=0):
        if self.stage == "transfer-in" and pair.width == self.fail_width:
            raise TransferError("injected bus fault", stage="transfer-in")
        return super().transfer_to_device(pair, host_rgb, stream)


class FaultyDispatcher:
    def __init__(self, dispatcher, fail_width):
        self.dispatcher = dispatcher
        self.fail_width = fail_width

    def convert(self, buffers, stream=0):
        if buffers.width == self.fail_width:
            raise KernelError("injected launch failure", status=719)
        return self.dispatcher.convert(buffers, stream)


def test_process_image_matches_reference(make_config, random_rgb):
    pipeline = GreyscalePipeline(make_config(variant=KernelVariant.SHARED))
    image = make_images(random_rgb, [(17, 17)])[0]
    grey = pipeline.process_image(image)
    np.testing.assert_array_equal(grey, reference_greyscale(image.rgb, 17, 17))
    assert pipeline.memory.live_pairs == 0


def test_process_image_hands_result_to_writer(make_config, random_rgb):
    written = {}
    pipeline = GreyscalePipeline(make_config())
    image = make_images(random_rgb, [(5, 4)])[0]

    def writer(identifier, grey, width, height):
        written[identifier] = (grey.copy(), width, height)

    pipeline.process_image(image, writer)
    grey, width, height = written["img0"]
    assert (width, height) == (5, 4)
    assert grey.size == 20


def test_process_image_propagates_and_releases(make_config, random_rgb):
    memory = FaultyMemory(fail_width=6, stage="transfer-in")
    pipeline = GreyscalePipeline(make_config(), memory=memory)
    with pytest.raises(TransferError) as info:
        pipeline.process_image(make_images(random_rgb, [(6, 2)])[0])
    assert info.value.stage == "transfer-in"
    assert memory.live_pairs == 0


def test_batch_accepts_tuples(make_config, random_rgb):
    pipeline = GreyscalePipeline(make_config())
    rgb = random_rgb(3, 3)
    result = pipeline.process_batch([("t", rgb, 3, 3)])
    assert result.successes == ["t"]
    np.testing.assert_array_equal(result.outputs["t"], reference_greyscale(rgb, 3, 3))


def test_image_rejects_wrong_byte_count(random_rgb):
    with pytest.raises(ValueError) as info:
        Image("bad", random_rgb(3, 3), 4, 3)
    assert "27 bytes" in str(info.value)
    rejected = info.traceback[-1].frame.f_locals["self"]
    assert repr(rejected) == "Image('bad', 4x3)"


@pytest.mark.parametrize("pipelined", [False, True])
def test_batch_survives_mismatched_tuples(make_config, random_rgb, pipelined):
    pipeline = GreyscalePipeline(make_config(pipelined=pipelined))
    items = [("good", random_rgb(3, 3), 3, 3),
             ("bad", random_rgb(3, 3), 4, 3),
             ("later", random_rgb(2, 2), 2, 2)]
    result = pipeline.process_batch(items)
    assert result.successes == ["good", "later"]
    failure = result.failures[0]
    assert (failure.identifier, failure.kind, failure.stage) == ("bad", "ImageIOError", "decode")
    assert "27 bytes" in failure.message
    assert pipeline.memory.live_pairs == 0


def test_batch_survives_undecodable_files(make_config, image_dir):
    pipeline = GreyscalePipeline(make_config())
    result = pipeline.process_batch(image_files(image_dir))
    assert result.succeeded == 3
    assert result.failed == 2
    assert sorted(result.successes) == ["a.png", "b.png", "nested/c.bmp"]
    assert {f.identifier for f in result.failures} == {"broken.png", "empty.jpg"}
    assert all(f.kind == "ImageIOError" and f.stage == "decode" for f in result.failures)
    assert result.failure_reasons() == {"ImageIOError": 2}
    assert not result.ok


@pytest.mark.parametrize("stage,kind", [
    ("allocate", "AllocationError"),
    ("transfer-in", "TransferError"),
])
def test_batch_survives_device_faults(make_config, random_rgb, stage, kind):
    memory = FaultyMemory(fail_width=9, stage=stage)
    pipeline = GreyscalePipeline(make_config(), memory=memory)
    images = make_images(random_rgb, [(4, 4), (9, 2), (3, 5)])
    result = pipeline.process_batch(images)
    assert result.successes == ["img0", "img2"]
    assert [(f.identifier, f.kind, f.stage) for f in result.failures] == [("img1", kind, stage)]
    assert memory.live_pairs == 0


def test_batch_survives_kernel_fault(make_config, random_rgb):
    pipeline = GreyscalePipeline(make_config())
    pipeline.dispatcher = FaultyDispatcher(pipeline.dispatcher, fail_width=2)
    images = make_images(random_rgb, [(2, 2), (5, 5)])
    result = pipeline.process_batch(images)
    assert result.successes == ["img1"]
    failure = result.failures[0]
    assert failure.kind == "KernelError"
    assert failure.stage == "compute"
    assert "719" in failure.message
    assert pipeline.memory.live_pairs == 0


def test_writer_failure_is_recorded(make_config, random_rgb):
    def writer(identifier, grey, width, height):
        if identifier == "img0":
            raise ImageIOError("disk full", stage="encode")

    pipeline = GreyscalePipeline(make_config(), writer=writer)
    result = pipeline.process_batch(make_images(random_rgb, [(2, 2), (3, 3)]))
    assert result.successes == ["img1"]
    assert result.failures[0].stage == "encode"
    assert result.outputs == {}
    assert pipeline.memory.live_pairs == 0


def test_benchmark_collects_one_sample_per_success(make_config, random_rgb):
    pipeline = GreyscalePipeline(make_config(benchmark=True, clock="wall"))
    images = make_images(random_rgb, [(4, 4), (17, 3)])
    result = pipeline.process_batch(images)
    assert [s.image_id for s in result.samples] == ["img0", "img1"]
    assert [s.nbytes for s in result.samples] == [48, 153]
    for sample in result.samples:
        assert sample.transfer_in_ms >= 0
        assert sample.compute_ms >= 0
        assert sample.transfer_out_ms >= 0
    assert result.report.num_images == 2
    assert result.report.total_bytes == 201
    assert result.report.wall_s > 0
    assert pipeline._warmed_up


def test_benchmark_skips_images_that_fail_to_write(make_config, random_rgb):
    def writer(identifier, grey, width, height):
        if identifier == "img0":
            raise ImageIOError("disk full", stage="encode")

    pipeline = GreyscalePipeline(make_config(benchmark=True, clock="wall"), writer=writer)
    result = pipeline.process_batch(make_images(random_rgb, [(2, 2), (3, 3)]))
    assert [s.image_id for s in result.samples] == ["img1"]
    assert result.report.total_bytes == 27
    assert pipeline.harness.pending == {}


def failing_sync_streams(monkeypatch, fail_index):
    """Make the stream created for image `fail_index` fault when synchronised."""
    real_stream = pipeline_module.cuda.stream
    created = []

    def stream():
        s = real_stream()
        if len(created) == fail_index:
            def synchronize():
                raise api_error(CUDA_ERROR_ILLEGAL_ADDRESS)
            s.synchronize = synchronize
        created.append(s)
        return s

    monkeypatch.setattr(pipeline_module.cuda, "stream", stream)


@pytest.mark.parametrize("pipelined", [False, True])
def test_late_device_fault_is_charged_to_transfer_out(make_config, random_rgb,
                                                      monkeypatch, pipelined):
    pipeline = GreyscalePipeline(make_config(pipelined=pipelined))
    failing_sync_streams(monkeypatch, fail_index=1)
    result = pipeline.process_batch(make_images(random_rgb, [(4, 4), (5, 2), (3, 3)]))
    assert result.successes == ["img0", "img2"]
    assert [(f.identifier, f.kind, f.stage) for f in result.failures] == [
        ("img1", "TransferError", "transfer-out")]
    assert pipeline.memory.live_pairs == 0


def test_warmup_can_be_disabled(make_config, random_rgb):
    pipeline = GreyscalePipeline(make_config(benchmark=True, clock="wall", warmup=False))
    pipeline.process_batch(make_images(random_rgb, [(2, 2)]))
    assert not pipeline._warmed_up


@pytest.mark.parametrize("benchmark", [False, True])
def test_pipelined_batch_matches_sequential(make_config, random_rgb, benchmark):
    images = make_images(random_rgb, [(17, 2), (3, 3), (16, 5), (1, 1)])
    pipeline = GreyscalePipeline(make_config(pipelined=True, benchmark=benchmark))
    result = pipeline.process_batch(images)
    assert result.successes == ["img0", "img1", "img2", "img3"]
    for image in images:
        np.testing.assert_array_equal(
            result.outputs[image.identifier],
            reference_greyscale(image.rgb, image.width, image.height))
    assert pipeline.memory.live_pairs == 0
    if benchmark:
        assert len(result.samples) == 4


def test_pipelined_batch_survives_faults(make_config, random_rgb):
    memory = FaultyMemory(fail_width=9, stage="transfer-in")
    pipeline = GreyscalePipeline(make_config(pipelined=True), memory=memory)
    result = pipeline.process_batch(make_images(random_rgb, [(4, 4), (9, 2), (3, 5)]))
    assert result.successes == ["img0", "img2"]
    assert result.failures[0].identifier == "img1"
    assert memory.live_pairs == 0


def test_pipeline_needs_a_device():
    config = RunConfig(environment=DeviceEnvironment(available=False))
    with pytest.raises(ConfigurationError):
        GreyscalePipeline(config)


def test_shared_variant_with_wrong_block_fails_before_processing(make_config):
    with pytest.raises(ConfigurationError):
        GreyscalePipeline(make_config(variant="optimized", block_dim=8))
