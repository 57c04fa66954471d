"""
Tests for client-side image optimization.
"""

import io
from unittest.mock import patch

from PIL import Image

from collector.client.image_optimizer import (
    ImageFile,
    ImageOptimizer,
    OptimizationConfig,
    get_optimizer,
)

from conftest import make_image_bytes


class TestShouldOptimize:
    def test_small_file_passes_through(self, png_bytes):
        """Test small files are uploaded untouched."""
        file = ImageFile("small.png", "image/png", png_bytes)

        assert ImageOptimizer().optimize(file) is file

    def test_non_image_passes_through(self):
        """Test non-image files are uploaded untouched."""
        file = ImageFile("doc.pdf", "application/pdf", b"%PDF" + b"\x00" * (700 * 1024))

        assert ImageOptimizer().optimize(file) is file


class TestOptimize:
    def test_large_image_recompressed(self, noisy_png_bytes):
        """Test a large image is recompressed to JPEG."""
        file = ImageFile("passport.png", "image/png", noisy_png_bytes)

        result = ImageOptimizer().optimize(file)

        assert result is not file
        assert result.name == "passport-optimized.jpg"
        assert result.content_type == "image/jpeg"
        assert result.size < file.size * 0.95
        with Image.open(io.BytesIO(result.data)) as img:
            assert img.format == "JPEG"
            assert img.size == (1200, 900)

    def test_longest_edge_capped(self):
        """Test the longest edge is capped."""
        data = make_image_bytes(2400, 600, fmt="PNG", noise=True)
        file = ImageFile("wide.png", "image/png", data)

        result = ImageOptimizer().optimize(file)

        with Image.open(io.BytesIO(result.data)) as img:
            assert img.size == (1600, 400)

    def test_exif_orientation_applied(self):
        """Test a sideways phone capture comes out upright with no orientation tag."""
        exif = Image.Exif()
        exif[0x0112] = 6
        data = make_image_bytes(2400, 1800, fmt="JPEG", noise=True, quality=95, exif=exif.tobytes())
        file = ImageFile("portrait.jpg", "image/jpeg", data)

        result = ImageOptimizer().optimize(file)

        assert result is not file
        with Image.open(io.BytesIO(result.data)) as img:
            assert img.size == (1200, 1600)
            assert img.getexif().get(0x0112) is None

    def test_never_upscales(self):
        """Test small images are never enlarged."""
        optimizer = ImageOptimizer(OptimizationConfig(min_compress_bytes=0))
        img = Image.new("RGB", (200, 100))

        assert optimizer._resize_if_needed(img).size == (200, 100)

    def test_transparency_flattened_to_white(self):
        """Test transparent pixels are flattened onto white."""
        optimizer = ImageOptimizer()
        img = Image.new("RGBA", (10, 10), (0, 0, 0, 0))

        flattened = optimizer._to_rgb(img)

        assert flattened.mode == "RGB"
        assert flattened.getpixel((0, 0)) == (255, 255, 255)

    def test_compression_that_does_not_help_is_discarded(self, noisy_png_bytes):
        """Test the original is kept when recompression saves too little."""
        file = ImageFile("passport.png", "image/png", noisy_png_bytes)
        optimizer = ImageOptimizer()

        with patch.object(optimizer, "_recompress", return_value=b"x" * file.size):
            assert optimizer.optimize(file) is file

    def test_corrupt_image_falls_back(self):
        """Test an undecodable image falls back to the original."""
        file = ImageFile("broken.jpg", "image/jpeg", b"\xff\xd8\xff" + b"\x00" * (700 * 1024))

        assert ImageOptimizer().optimize(file) is file


class TestGlobalOptimizer:
    def test_singleton(self):
        """Test get_optimizer returns one shared instance."""
        assert get_optimizer() is get_optimizer()
