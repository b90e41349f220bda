# tests/test_qr_renderer.py
"""Tests for the qrcode/Pillow renderer."""

import base64
import io

import pytest
from PIL import Image

from models.render_options import RenderOptions
from services.errors import RenderError
from services.qr_renderer import DATA_URL_PREFIX, QRRenderer


def _decode(data_url: str) -> Image.Image:
    assert data_url.startswith(DATA_URL_PREFIX)
    raw = base64.b64decode(data_url[len(DATA_URL_PREFIX):])
    return Image.open(io.BytesIO(raw))


class TestQRRenderer:
    def test_png_has_requested_width(self):
        png = QRRenderer().render_png("https://x.test", RenderOptions(width=300))

        img = Image.open(io.BytesIO(png))
        assert img.format == "PNG"
        assert img.size == (300, 300)

    def test_defaults_are_used(self):
        renderer = QRRenderer(RenderOptions(error_correction="H", width=150, margin=4))

        img = _decode(renderer.render_data_url("hello"))
        assert img.size == (150, 150)

    def test_corners_use_dark_and_light_colours(self):
        img = _decode(QRRenderer().render_data_url("hello", RenderOptions(width=210, margin=0))).convert("RGB")

        # With no margin the top-left finder pattern starts at the corner.
        assert img.getpixel((0, 0)) == (0, 0, 0)

        with_margin = _decode(QRRenderer().render_data_url("hello", RenderOptions(width=210, margin=4))).convert("RGB")
        assert with_margin.getpixel((0, 0)) == (255, 255, 255)

    def test_unknown_level_raises(self):
        with pytest.raises(RenderError):
            QRRenderer().render_png("x", RenderOptions(error_correction="Z"))

    def test_payload_too_large_raises(self):
        with pytest.raises(RenderError):
            QRRenderer().render_png("x" * 8000, RenderOptions(error_correction="H"))

    async def test_async_render(self):
        url = await QRRenderer().render("async", RenderOptions(width=100))

        assert _decode(url).size == (100, 100)


class TestRenderOptions:
    def test_merged_uses_api_names(self):
        merged = RenderOptions().merged({"errorCorrectionLevel": "Q", "width": 400})

        assert merged == RenderOptions(error_correction="Q", width=400, margin=1)

    def test_merged_without_overrides(self):
        defaults = RenderOptions()
        assert defaults.merged(None) is defaults
        assert defaults.merged({"margin": None}) == defaults
