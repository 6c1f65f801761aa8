import os

# Run kernels on the numba CUDA simulator unless a real device was asked for.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import numpy as np
import pytest
from PIL import Image as PILImage

from gpu_greyscale.config import RunConfig, detect_environment


@pytest.fixture(scope="session")
def environment():
    return detect_environment()


@pytest.fixture
def make_config(environment):
    def _make(**kwargs):
        kwargs.setdefault("environment", environment)
        return RunConfig(**kwargs)
    return _make


@pytest.fixture
def random_rgb():
    def _make(width, height, seed=0):
        rng = np.random.default_rng(seed)
        return rng.integers(0, 256, width * height * 3, dtype=np.uint8)
    return _make


@pytest.fixture
def image_dir(tmp_path, random_rgb):
    """Three decodable images (one in a subdirectory) and two broken ones."""
    src = tmp_path / "input"
    (src / "nested").mkdir(parents=True)
    sizes = {"a.png": (17, 17), "b.png": (5, 3), "nested/c.bmp": (16, 9)}
    for i, (name, (w, h)) in enumerate(sizes.items()):
        pixels = random_rgb(w, h, seed=i).reshape(h, w, 3)
        PILImage.fromarray(pixels).save(src / name)
    (src / "broken.png").write_bytes(b"not an image at all")
    (src / "empty.jpg").write_bytes(b"")
    (src / "notes.txt").write_text("ignored")
    return src
