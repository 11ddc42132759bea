"""Frame-space to display-space rectangle mapping for overlay renderers.

Detectors report boxes in camera-frame pixels; an overlay draws them in view
pixels. Front-facing lenses show a mirrored preview, so boxes are also flipped
about the vertical centre line of the view.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from facegate.core.models import Rect
from facegate.exceptions import ConfigurationError

logger = logging.getLogger("facegate.recognition.mapping")


class CoordinateMapper:
    """Scales (and optionally mirrors) rectangles from frame to view space."""

    def __init__(self) -> None:
        self._scale_x: float | None = None
        self._scale_y: float | None = None
        self._view_width: float = 0.0
        self._mirror = False

    @property
    def is_configured(self) -> bool:
        return self._scale_x is not None

    def configure(
        self,
        frame_width: int,
        frame_height: int,
        view_width: int,
        view_height: int,
        is_front_facing: bool,
    ) -> None:
        """Set frame and view sizes. Must be called before :meth:`map`."""
        dims = {
            "frame_width": frame_width,
            "frame_height": frame_height,
            "view_width": view_width,
            "view_height": view_height,
        }
        bad = {k: v for k, v in dims.items() if v <= 0}
        if bad:
            msg = f"Mapper dimensions must be positive, got {bad}"
            raise ConfigurationError(msg)

        self._scale_x = view_width / frame_width
        self._scale_y = view_height / frame_height
        self._view_width = float(view_width)
        self._mirror = bool(is_front_facing)

    def map(self, rect: Rect, strict: bool = False) -> Rect:
        """Map one frame-space rectangle to view space.

        Before :meth:`configure` the input is returned unchanged and the
        condition is logged; with ``strict=True`` a ``ConfigurationError``
        is raised instead.
        """
        if self._scale_x is None or self._scale_y is None:
            if strict:
                raise ConfigurationError("CoordinateMapper used before configure()")
            logger.error("CoordinateMapper not configured; returning rectangle unchanged")
            return rect

        left = rect.left * self._scale_x
        right = rect.right * self._scale_x
        top = rect.top * self._scale_y
        bottom = rect.bottom * self._scale_y

        if self._mirror:
            # x' = 2*cx - x, then swap so left <= right
            left, right = self._view_width - right, self._view_width - left

        return Rect(left=left, top=top, right=right, bottom=bottom)

    def map_all(self, rects: Iterable[Rect], strict: bool = False) -> list[Rect]:
        """Map rectangles in order, returning new values."""
        return [self.map(r, strict=strict) for r in rects]
