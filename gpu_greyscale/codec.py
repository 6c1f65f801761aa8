"""
Image I/O
=========
Thin Pillow wrappers. The pipeline only ever sees flat uint8 RGB bytes plus
width and height; container formats stay in here.
"""

from pathlib import Path

import numpy as np
from PIL import Image

from .errors import ConfigurationError, ImageIOError
from .pipeline import Image as DecodedImage

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.bmp', '.tif', '.tiff'}


def decode(path):
    """Return (rgb_bytes, width, height) with rgb_bytes flat uint8 of size w*h*3."""
    try:
        with Image.open(path) as img:
            img = img.convert('RGB')
            w, h = img.size
            rgb = np.array(img, dtype=np.uint8).reshape(-1)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageIOError(f"Cannot decode {path}: {exc}", stage="decode") from exc
    return rgb, w, h


def encode(grey, width, height, path):
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        pixels = np.asarray(grey, dtype=np.uint8).reshape(height, width)
        Image.fromarray(pixels).save(path)
    except (OSError, ValueError) as exc:
        raise ImageIOError(f"Cannot write {path}: {exc}", stage="encode") from exc


def find_images(input_path):
    """Image files under a directory (recursive, sorted), or the file itself."""
    input_path = Path(input_path)
    if not input_path.exists():
        raise ConfigurationError(f"Input path '{input_path}' does not exist")
    if input_path.is_file():
        return [input_path]

    image_files = [p for p in input_path.rglob('*')
                   if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS]
    return sorted(image_files)


class ImageFile:
    """Batch source that decodes lazily, so a bad file fails only its own slot."""

    def __init__(self, path, identifier=None):
        self.path = Path(path)
        self.identifier = identifier or self.path.name

    def load(self):
        rgb, w, h = decode(self.path)
        return DecodedImage(self.identifier, rgb, w, h)

    def __repr__(self):
        return f"ImageFile({str(self.path)!r})"


def image_files(input_path):
    """ImageFile sources keyed by path relative to the input directory."""
    input_path = Path(input_path)
    paths = find_images(input_path)
    if input_path.is_file():
        return [ImageFile(input_path)]
    return [ImageFile(p, p.relative_to(input_path).as_posix()) for p in paths]


class DirectoryWriter:
    """Writes each result under output_dir at the identifier's relative path."""

    def __init__(self, output_dir):
        self.output_dir = Path(output_dir)
        self.written = []

    def __call__(self, identifier, grey, width, height):
        path = self.output_dir / identifier
        encode(grey, width, height, path)
        self.written.append(path)
        return path
