"""Utilities for decoding service rasters and encoding composites."""

import io
from pathlib import Path

import numpy as np
from PIL import Image, PngImagePlugin


class ImageCodec:
    """Conversion between encoded images and RGBA arrays.

    Tiles and legends arrive as PNG (or whatever the service sends);
    everything downstream works on (height, width, 4) uint8 arrays.
    """

    @staticmethod
    def decode_raster(payload: bytes) -> np.ndarray:
        """Decode image bytes to an RGBA array.

        Args:
            payload: Encoded image bytes

        Returns:
            Array of shape (height, width, 4) and dtype uint8

        Raises:
            ValueError: If the payload is not a readable image
        """
        try:
            img = Image.open(io.BytesIO(payload))
            img = img.convert("RGBA")
        except OSError as e:
            raise ValueError(f"Undecodable image ({len(payload)} bytes): {e}") from e
        return np.array(img, dtype=np.uint8)

    @staticmethod
    def new_raster(width: int, height: int) -> np.ndarray:
        """Create a fully transparent RGBA array."""
        return np.zeros((height, width, 4), dtype=np.uint8)

    @staticmethod
    def encode_png(raster: np.ndarray, text: dict[str, str] | None = None) -> bytes:
        """Encode an RGBA array as PNG bytes.

        Args:
            raster: (height, width, 4) uint8 array
            text: Optional text chunks (keyword to value)

        Returns:
            PNG file content
        """
        info = PngImagePlugin.PngInfo()
        for key, value in (text or {}).items():
            info.add_text(key, value)
        buffer = io.BytesIO()
        Image.fromarray(np.ascontiguousarray(raster, dtype=np.uint8)).save(buffer, format="PNG", pnginfo=info)
        return buffer.getvalue()

    @staticmethod
    def save_png(raster: np.ndarray, path: Path, text: dict[str, str] | None = None) -> Path:
        """Write an RGBA array to a PNG file, creating parent directories."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(ImageCodec.encode_png(raster, text))
        return path
