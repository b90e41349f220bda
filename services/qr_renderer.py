"""QR code renderer.

Provides a small OOP wrapper around `qrcode` and Pillow that turns a text
payload into a square PNG of the requested width and returns it as a
`data:image/png;base64,...` URL, the form stored on every record.

Public class: `QRRenderer`

Example:
    renderer = QRRenderer(RenderOptions(error_correction="M", width=200, margin=1))
    image_url = await renderer.render("https://example.com")
"""
from __future__ import annotations

import asyncio
import base64
import io
from typing import Dict, Optional

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q
from qrcode.image.pil import PilImage

from models.render_options import RenderOptions
from services.errors import RenderError

ERROR_CORRECTION: Dict[str, int] = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}

DATA_URL_PREFIX = "data:image/png;base64,"


class QRRenderer:
    """Render QR codes as PNG data URLs.

    Args:
        defaults: Options used when a call does not supply its own.
        dark: Module colour as an RGB tuple.
        light: Background colour as an RGB tuple.
    """

    def __init__(
        self,
        defaults: Optional[RenderOptions] = None,
        dark: tuple[int, int, int] = (0, 0, 0),
        light: tuple[int, int, int] = (255, 255, 255),
    ):
        self.defaults = defaults or RenderOptions()
        self.dark = dark
        self.light = light

    def render_png(self, data: str, options: Optional[RenderOptions] = None) -> bytes:
        """Render `data` to PNG bytes.

        Raises:
            RenderError: If the payload cannot be encoded or the image cannot be produced.
        """
        opts = options or self.defaults
        level = ERROR_CORRECTION.get(opts.error_correction)
        if level is None:
            raise RenderError(f"Unknown error correction level {opts.error_correction!r}")

        try:
            qr = qrcode.QRCode(version=None, error_correction=level, box_size=10, border=opts.margin)
            qr.add_data(data)
            qr.make(fit=True)
            matrix_img = qr.make_image(image_factory=PilImage, fill_color=self.dark, back_color=self.light)

            raw_io = io.BytesIO()
            matrix_img.save(raw_io, format="PNG")
            raw_io.seek(0)

            # Nearest-neighbour keeps module edges sharp at any output width.
            with Image.open(raw_io) as src:
                sized = src.convert("RGB").resize((opts.width, opts.width), Image.NEAREST)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(f"Failed to render QR code: {exc}") from exc

        out_io = io.BytesIO()
        sized.save(out_io, format="PNG", optimize=True)
        return out_io.getvalue()

    def render_data_url(self, data: str, options: Optional[RenderOptions] = None) -> str:
        png = self.render_png(data, options)
        return DATA_URL_PREFIX + base64.b64encode(png).decode("utf-8")

    async def render(self, data: str, options: Optional[RenderOptions] = None) -> str:
        """Render off the event loop and return the PNG data URL."""
        # rendering is blocking -> run in thread
        return await asyncio.to_thread(self.render_data_url, data, options)
