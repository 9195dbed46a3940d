# sd_sampler/images.py
"""Writing generated RGB buffers to PNG files."""

from __future__ import annotations

from typing import List, Sequence

from PIL import Image

from sd_sampler.config import ensure_parent_dir
from sd_sampler.errors import ImageSaveError


def image_path(basepath: str, index: int) -> str:
    return f"{basepath}{index}.png"


def save_images(
    images: Sequence[bytes],
    basepath: str,
    width: int,
    height: int,
) -> List[str]:
    """
    Save each RGB buffer as `{basepath}{index}.png`.

    Returns:
        The written paths, in sample order.

    Raises:
        ImageSaveError: a buffer has the wrong size or a file cannot be written.
    """
    paths = []
    for index, data in enumerate(images):
        path = image_path(basepath, index)
        try:
            ensure_parent_dir(path)
            Image.frombytes("RGB", (width, height), bytes(data)).save(path, format="PNG")
        except (OSError, ValueError) as err:
            raise ImageSaveError(f"could not save {path}: {err}") from err
        paths.append(path)
    return paths
