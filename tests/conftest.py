"""Shared fixtures for the quantization tests"""

import json

import numpy as np
import pytest
from PIL import Image

from quantize_lib import PixelBuffer


@pytest.fixture
def gradient_image():
    """12x8 RGB image with a different color in nearly every pixel."""
    h, w = 8, 12
    y, x = np.mgrid[0:h, 0:w]
    arr = np.stack([x * 20, y * 30, (x + y) * 10], axis=-1).astype(np.uint8)
    return Image.fromarray(arr)


@pytest.fixture
def rgba_image(gradient_image):
    """The gradient image with a varying alpha channel."""
    img = gradient_image.convert('RGBA')
    alpha = np.arange(img.width * img.height, dtype=np.uint8).reshape(img.height, img.width)
    img.putalpha(Image.fromarray(alpha * 2))
    return img


@pytest.fixture
def two_tone_image():
    """4x2 image, left half black, right half white."""
    arr = np.zeros((2, 4, 3), dtype=np.uint8)
    arr[:, 2:] = 255
    return Image.fromarray(arr)


@pytest.fixture
def random_points():
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(500, 3))


@pytest.fixture
def make_buffer():
    """Build a PixelBuffer from RGB triples in row-major order."""
    def _make(rgb_rows, width, height, alpha=255):
        data = []
        for r, g, b in rgb_rows:
            data.extend([r, g, b, alpha])
        return PixelBuffer(width, height, np.array(data))
    return _make


@pytest.fixture
def write_job(tmp_path):
    """Write a job config next to the test files and return its path."""
    def _write(config, name="job.json"):
        path = tmp_path / name
        path.write_text(json.dumps(config), encoding='utf-8')
        return path
    return _write
