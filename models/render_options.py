"""Rendering option model shared by the renderer, validation, and the service."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

ERROR_CORRECTION_LEVELS = ("L", "M", "Q", "H")


@dataclass(frozen=True)
class RenderOptions:
    """Options passed to the QR renderer.

    Attributes:
        error_correction: One of L, M, Q, H.
        width: Output image width (and height) in pixels.
        margin: Quiet-zone width in modules.
    """

    error_correction: str = "M"
    width: int = 200
    margin: int = 1

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "RenderOptions":
        """Return a copy with any caller-supplied overrides applied.

        Accepts the API spelling (`errorCorrectionLevel`, `width`, `margin`).
        """
        if not overrides:
            return self
        changes: Dict[str, Any] = {}
        if overrides.get("errorCorrectionLevel") is not None:
            changes["error_correction"] = overrides["errorCorrectionLevel"]
        if overrides.get("width") is not None:
            changes["width"] = overrides["width"]
        if overrides.get("margin") is not None:
            changes["margin"] = overrides["margin"]
        return replace(self, **changes)
