"""
Pillow-backed image pipeline.

Each adjustment returns a new ImagePipeline, so chains read top to bottom:

    ImagePipeline.open(path).resize_within(1920, 1920).modulate(1.15, 1.3).sharpen().encode()

Images are normalised to RGB on load. EXIF orientation is applied.
"""

import io
from pathlib import Path
from typing import Iterable, List, Tuple

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

GRAYSCALE_SATURATION_THRESHOLD = 0.12

Pixel = Tuple[int, int, int]


def average_saturation(pixels: Iterable[Pixel]) -> float:
    """Mean HSV saturation, (max - min) / max per pixel, in [0, 1]."""
    total = 0.0
    count = 0
    for r, g, b in pixels:
        hi = max(r, g, b)
        lo = min(r, g, b)
        total += 0.0 if hi == 0 else (hi - lo) / hi
        count += 1
    return total / count if count else 0.0


def _clamp(value: float) -> int:
    return max(0, min(255, int(round(value))))


class ImagePipeline:
    def __init__(self, image: Image.Image):
        self.image = image

    @classmethod
    def open(cls, path) -> "ImagePipeline":
        with Image.open(Path(path)) as img:
            img.load()
            return cls._prepare(img)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImagePipeline":
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return cls._prepare(img)

    @classmethod
    def _prepare(cls, img: Image.Image) -> "ImagePipeline":
        # convert also copies, so the result outlives the source file
        return cls(ImageOps.exif_transpose(img).convert("RGB"))

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    # ---------- geometry ----------

    def resize_within(self, width: int, height: int) -> "ImagePipeline":
        """Fit inside width x height without enlarging."""
        img = self.image.copy()
        img.thumbnail((width, height), Image.Resampling.LANCZOS)
        return ImagePipeline(img)

    def scale(self, factor: float) -> "ImagePipeline":
        w, h = self.size
        new_size = (max(1, round(w * factor)), max(1, round(h * factor)))
        return ImagePipeline(self.image.resize(new_size, Image.Resampling.LANCZOS))

    # ---------- colour and tone ----------

    def modulate(self, brightness: float = 1.0, saturation: float = 1.0, hue: float = 0) -> "ImagePipeline":
        img = self.image
        if brightness != 1.0:
            img = ImageEnhance.Brightness(img).enhance(brightness)
        if saturation != 1.0:
            img = ImageEnhance.Color(img).enhance(saturation)
        if hue:
            # PIL hue band is 0-255 for a full turn
            shift = int(round(hue / 360.0 * 255)) % 256
            h, s, v = img.convert("HSV").split()
            h = h.point(lambda x: (x + shift) % 256)
            img = Image.merge("HSV", (h, s, v)).convert("RGB")
        return ImagePipeline(img)

    def normalize(self, cutoff: float = 0) -> "ImagePipeline":
        """Contrast stretch; cutoff is the percentage clipped at each end."""
        return ImagePipeline(ImageOps.autocontrast(self.image, cutoff=cutoff))

    def linear(self, a: float, b: float = 0) -> "ImagePipeline":
        return ImagePipeline(self.image.point(lambda x: _clamp(a * x + b)))

    def gamma(self, value: float) -> "ImagePipeline":
        inverse = 1.0 / value
        return ImagePipeline(self.image.point(lambda x: _clamp(255 * (x / 255.0) ** inverse)))

    def tint(self, rgb: Pixel) -> "ImagePipeline":
        """Re-colour the luminance towards rgb, keeping tonal range."""
        gray = self.image.convert("L")
        return ImagePipeline(ImageOps.colorize(gray, black=(0, 0, 0), white=rgb, mid=None))

    # ---------- detail ----------

    def sharpen(self, radius: float = 1.0, percent: int = 150, threshold: int = 3) -> "ImagePipeline":
        return ImagePipeline(self.image.filter(ImageFilter.UnsharpMask(radius, percent, threshold)))

    def median(self, size: int = 3) -> "ImagePipeline":
        if size % 2 == 0:
            size += 1
        return ImagePipeline(self.image.filter(ImageFilter.MedianFilter(size)))

    def blur(self, radius: float) -> "ImagePipeline":
        return ImagePipeline(self.image.filter(ImageFilter.GaussianBlur(radius)))

    # ---------- output and sampling ----------

    def encode(self, format: str = "JPEG", quality: int = 90) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, format=format, quality=quality)
        return buf.getvalue()

    def save(self, path, quality: int = 90) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.image.save(path, format="JPEG", quality=quality)
        return path

    def sample_pixels(self, max_side: int = 100) -> List[Pixel]:
        sample = self.image.copy()
        sample.thumbnail((max_side, max_side))
        raw = sample.tobytes()
        return [tuple(raw[i:i + 3]) for i in range(0, len(raw), 3)]

    def is_grayscale(self, threshold: float = GRAYSCALE_SATURATION_THRESHOLD) -> bool:
        return average_saturation(self.sample_pixels()) < threshold
