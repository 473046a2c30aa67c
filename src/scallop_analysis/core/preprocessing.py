"""Image preparation: working representations and gradient chain."""

from contextlib import contextmanager
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Iterator, Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError
from skimage import color as skcolor
from skimage import feature, filters, morphology, transform
from skimage.util import img_as_float, img_as_ubyte

from .color import ColorClassifier, ColorResults


def load_image(path: Union[str, Path]) -> np.ndarray:
    """
    Load an image from disk as RGB.

    Args:
        path: Path to image file (JPEG, PNG, TIFF, ...)

    Returns:
        Image as uint8 numpy array (H, W, 3)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    try:
        with Image.open(path) as img:
            if img.mode != "RGB":
                img = img.convert("RGB")
            return np.array(img)
    except UnidentifiedImageError as e:
        raise OSError(f"Unreadable image {path}: {e}")


def to_rgb_float(image: np.ndarray) -> np.ndarray:
    """
    Convert any supported image to float64 RGB in [0, 1].

    Grayscale is replicated to three channels; an alpha channel is dropped.
    """
    image = img_as_float(image)
    if image.ndim == 2:
        return np.stack([image] * 3, axis=-1)
    if image.shape[2] == 4:
        return image[..., :3]
    return image


def resize_image(image: np.ndarray, factor: float) -> np.ndarray:
    """
    Rescale an image by ``factor`` in both dimensions.

    Output dimensions are truncated to whole pixels; the input dtype is kept.
    """
    h, w = image.shape[:2]
    shape = (max(1, int(factor * h)), max(1, int(factor * w))) + image.shape[2:]
    resized = transform.resize(
        image,
        shape,
        anti_aliasing=factor < 1.0,
        preserve_range=True,
    )
    if np.issubdtype(image.dtype, np.integer):
        resized = np.rint(resized)
    return resized.astype(image.dtype, copy=False)


@dataclass
class GradientChain:
    """Gradient-derived maps shared by the template and edge based stages."""

    gray_smoothed: np.ndarray
    gray_gradient: np.ndarray
    lab_gradient: np.ndarray
    saliency_gradient: np.ndarray
    stable_edges: np.ndarray

    @property
    def combined(self) -> np.ndarray:
        """Maximum over the normalized gradient maps."""
        return np.maximum.reduce(
            [self.gray_gradient, self.lab_gradient, self.saliency_gradient]
        )


@dataclass
class PreparedImage:
    """All working representations of one image."""

    rgb32: np.ndarray
    lab: np.ndarray
    gray32: np.ndarray
    gray8: np.ndarray
    rgb8: np.ndarray
    color: ColorResults
    gradients: GradientChain

    @property
    def shape(self):
        return self.gray32.shape

    def release(self) -> None:
        """Drop references to every derived buffer."""
        for f in fields(self):
            setattr(self, f.name, None)


def _unit(image: np.ndarray) -> np.ndarray:
    peak = image.max()
    if peak < 1e-10:
        return np.zeros_like(image)
    return image / peak


def create_gradient_chain(
    lab: np.ndarray,
    gray32: np.ndarray,
    color: ColorResults,
    min_radius: float,
    max_radius: float,
) -> GradientChain:
    """
    Compute gradient maps at a scale tied to the minimum object radius.

    Stable edges are Canny edges present at both a fine and a coarse
    smoothing scale (the fine map is dilated to tolerate localization drift).

    Args:
        lab: CIELab image
        gray32: Grayscale float image
        color: Color classification results
        min_radius: Minimum object radius in pixels
        max_radius: Maximum object radius in pixels

    Returns:
        GradientChain with all maps normalized to [0, 1]
    """
    sigma = max(1.0, min_radius / 6.0)
    gray_smoothed = filters.gaussian(gray32, sigma=sigma)
    gray_gradient = _unit(filters.sobel(gray_smoothed))

    lab_smoothed = filters.gaussian(lab, sigma=sigma, channel_axis=-1)
    lab_gradient = _unit(
        np.sqrt(sum(filters.sobel(lab_smoothed[..., ch]) ** 2 for ch in range(3)))
    )
    saliency_gradient = _unit(filters.sobel(color.saliency))

    fine = feature.canny(gray32, sigma=sigma, low_threshold=0.02, high_threshold=0.06)
    coarse = feature.canny(gray32, sigma=2.0 * sigma, low_threshold=0.02, high_threshold=0.06)
    reach = max(1, int(round(sigma)))
    stable_edges = coarse & (morphology.dilation(fine, morphology.disk(reach)) > 0)

    return GradientChain(
        gray_smoothed=gray_smoothed,
        gray_gradient=gray_gradient,
        lab_gradient=lab_gradient,
        saliency_gradient=saliency_gradient,
        stable_edges=stable_edges,
    )


def prepare_image(
    image: np.ndarray,
    color_classifier: ColorClassifier,
    min_radius: float,
    max_radius: float,
) -> PreparedImage:
    """
    Derive every working representation needed downstream from one image.

    Args:
        image: Input image, uint8 or float, grayscale or RGB
        color_classifier: Thread-private color classifier
        min_radius: Minimum object radius in pixels (after any resize)
        max_radius: Maximum object radius in pixels (after any resize)

    Returns:
        PreparedImage
    """
    rgb32 = to_rgb_float(image)
    lab = skcolor.rgb2lab(rgb32)
    gray32 = skcolor.rgb2gray(rgb32)
    gray8 = img_as_ubyte(np.clip(gray32, 0.0, 1.0))
    rgb8 = img_as_ubyte(np.clip(rgb32, 0.0, 1.0))

    color = color_classifier.classify(lab, min_radius, max_radius)
    gradients = create_gradient_chain(lab, gray32, color, min_radius, max_radius)

    return PreparedImage(
        rgb32=rgb32,
        lab=lab,
        gray32=gray32,
        gray8=gray8,
        rgb8=rgb8,
        color=color,
        gradients=gradients,
    )


@contextmanager
def prepared_image(
    image: np.ndarray,
    color_classifier: ColorClassifier,
    min_radius: float,
    max_radius: float,
) -> Iterator[PreparedImage]:
    """Scoped PreparedImage; buffers are released on every exit path."""
    prepared: Optional[PreparedImage] = None
    try:
        prepared = prepare_image(image, color_classifier, min_radius, max_radius)
        yield prepared
    finally:
        if prepared is not None:
            prepared.release()
