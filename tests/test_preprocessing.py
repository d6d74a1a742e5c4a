"""
Tests for submission validation, decoding and artifact encoding.
"""
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from conftest import decode_png, png_bytes, png_header, solid

from cutout_service.config import Settings
from cutout_service.errors import InvalidInput
from cutout_service.express import ImageBuffer
from cutout_service.postprocessing import compose_rgba, encode_png, output_name
from cutout_service.preprocessing import compute_resize_dims, decode_to_buffer, validate_submission


class TestValidateSubmission:
    def test_accepts_png(self, gray_png, settings):
        source = validate_submission(gray_png, "photo.png", "image/png", settings)
        assert source.format == "PNG"
        assert source.size == (2, 2)
        assert source.filename == "photo.png"

    def test_content_type_inferred_when_missing(self, gray_png, settings):
        source = validate_submission(gray_png, "photo.png", None, settings)
        assert source.content_type == "image/png"

    def test_empty_file(self, settings):
        with pytest.raises(InvalidInput) as info:
            validate_submission(b"", "empty.png", "image/png", settings)
        assert "empty" in info.value.user_message

    def test_non_image_content_type(self, gray_png, settings):
        with pytest.raises(InvalidInput):
            validate_submission(gray_png, "notes.txt", "text/plain", settings)

    def test_garbage_bytes(self, settings):
        with pytest.raises(InvalidInput):
            validate_submission(b"definitely not an image", "x.png", "image/png", settings)

    def test_too_large(self, gray_png):
        small = Settings(max_upload_bytes=16)
        with pytest.raises(InvalidInput) as info:
            validate_submission(gray_png, "photo.png", "image/png", small)
        assert "too large" in info.value.user_message

    def test_declared_dimensions_too_large(self, settings):
        with pytest.raises(InvalidInput) as info:
            validate_submission(png_header(20000, 20000), "big.png", "image/png", settings)
        assert "too large" in info.value.user_message

    def test_pixel_limit(self, gray_png):
        tiny = Settings(max_pixels=3)
        with pytest.raises(InvalidInput) as info:
            validate_submission(gray_png, "photo.png", "image/png", tiny)
        assert "too large" in info.value.user_message

    def test_disallowed_format(self, settings):
        buf = BytesIO()
        Image.new("RGB", (2, 2)).save(buf, format="PNG")
        png_only = Settings(allowed_formats=("jpeg",))
        with pytest.raises(InvalidInput):
            validate_submission(buf.getvalue(), "photo.png", "image/png", png_only)

    def test_jpeg_accepted(self, settings):
        buf = BytesIO()
        Image.new("RGB", (3, 2), (10, 20, 30)).save(buf, format="JPEG")
        source = validate_submission(buf.getvalue(), "photo.jpg", "image/jpeg", settings)
        assert source.format == "JPEG"


class TestDecoding:
    def test_decode_preserves_pixels(self, subject_pixels):
        buf = decode_to_buffer(png_bytes(subject_pixels))
        assert np.array_equal(buf.pixels, subject_pixels)

    def test_rgb_gets_opaque_alpha(self):
        data = BytesIO()
        Image.new("RGB", (2, 3), (1, 2, 3)).save(data, format="PNG")
        buf = decode_to_buffer(data.getvalue())
        assert (buf.width, buf.height) == (2, 3)
        assert np.all(buf.alpha == 255)

    def test_decode_garbage(self):
        with pytest.raises(InvalidInput):
            decode_to_buffer(b"nope")

    def test_decode_oversized_header(self):
        with pytest.raises(InvalidInput):
            decode_to_buffer(png_header(20000, 20000))


class TestResize:
    def test_small_image_untouched(self):
        assert compute_resize_dims(640, 480, 1024) == (640, 480)

    def test_long_edge_limited_and_aligned(self):
        w, h = compute_resize_dims(4000, 3000, 1024)
        assert w == 1024
        assert h % 32 == 0 and h >= 736

    def test_disabled_limit(self):
        assert compute_resize_dims(5000, 10, 0) == (5000, 10)


class TestArtifacts:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("photo.png", "photo_transparent.png"),
            ("holiday.final.jpg", "holiday_transparent.png"),
            ("dir/sub/cat.webp", "cat_transparent.png"),
            ("C:\\Users\\me\\dog.jpeg", "dog_transparent.png"),
            ("", "image_transparent.png"),
            (".hidden", "image_transparent.png"),
            (None, "image_transparent.png"),
        ],
    )
    def test_output_name(self, filename, expected):
        assert output_name(filename) == expected

    def test_encode_png_keeps_alpha(self, subject_pixels):
        px = subject_pixels.copy()
        px[0, 0, 3] = 0
        data = encode_png(ImageBuffer(px))
        assert data[:8] == b"\x89PNG\r\n\x1a\n"
        assert np.array_equal(decode_png(data), px)

    def test_compose_rgba_resizes_matte(self):
        image = Image.new("RGB", (8, 4), (5, 6, 7))
        alpha = np.ones((2, 4), dtype=np.float32)
        buf = compose_rgba(image, alpha)
        assert (buf.width, buf.height) == (8, 4)
        assert np.all(buf.alpha == 255)
        assert np.all(buf.pixels[..., :3] == (5, 6, 7))

    def test_compose_rgba_clips(self):
        image = Image.new("RGB", (2, 2))
        alpha = np.array([[-1.0, 0.5], [1.0, 3.0]], dtype=np.float32)
        buf = compose_rgba(image, alpha)
        assert buf.alpha.tolist() == [[0, 127], [255, 255]]

    def test_encode_png_dumps_alpha_with_given_settings(self, tmp_path, subject_pixels):
        debug = Settings(debug=True, debug_output_dir=tmp_path / "dbg")
        encode_png(ImageBuffer(subject_pixels), "express", debug)
        dumped = np.array(Image.open(tmp_path / "dbg" / "express_alpha.png"))
        assert np.array_equal(dumped, subject_pixels[..., 3])
