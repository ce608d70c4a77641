"""
Image generation utilities for testing

These helpers build source images in memory so tests do not depend on
fixture files.
"""

import io
import random
from typing import Tuple

from PIL import Image


def solid_image_bytes(size: Tuple[int, int] = (2000, 2000),
                      color: Tuple[int, int, int] = (200, 30, 90),
                      image_format: str = 'PNG') -> bytes:
    """Encode a single-colour image.

    Solid images compress extremely well, so they fit the default budget on
    the first attempt.
    """
    img = Image.new('RGB', size, color)
    buffer = io.BytesIO()
    img.save(buffer, format=image_format)
    return buffer.getvalue()


def noise_image_bytes(size: Tuple[int, int] = (256, 256), seed: int = 1234) -> bytes:
    """Encode an image of random pixels.

    Noise defeats JPEG compression, which makes it useful for driving the
    width/quality search all the way to its floor.
    """
    rng = random.Random(seed)
    raw = bytes(rng.getrandbits(8) for _ in range(size[0] * size[1] * 3))
    img = Image.frombytes('RGB', size, raw)
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def write_image(path: str, data: bytes) -> str:
    with open(path, 'wb') as f:
        f.write(data)
    return path
