"""
Annotation rendering
====================

``draw_detections`` paints center-based detection boxes and their labels
onto a copy of an image.  It is a pure function of its inputs: the same
image and detections always give the same pixels, and the source array
is never modified.

``AnnotationExporter`` is the I/O around it: fetch a finished job's
image, render, and write ``govision-<job_id>.png``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path
from typing import Callable, Optional, Sequence

import cv2
import numpy as np
import requests

from govision.config import ClientConfig
from govision.jobs import Detection, JobStore

log = logging.getLogger("govision.renderer")

# Ten distinct box colours (BGR), picked by class id
BOX_COLOURS = [
    (68, 68, 239),     # red
    (246, 130, 59),    # blue
    (94, 197, 34),     # green
    (11, 158, 245),    # amber
    (247, 85, 168),    # purple
    (153, 72, 236),    # pink
    (212, 182, 6),     # cyan
    (22, 115, 249),    # orange
    (166, 184, 20),    # teal
    (246, 92, 139),    # violet
]
LABEL_TEXT_COLOUR = (255, 255, 255)
FONT = cv2.FONT_HERSHEY_SIMPLEX

EXPORT_NAME = "govision-{job_id}.png"


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def box_colour(class_id: int):
    return BOX_COLOURS[abs(class_id) % len(BOX_COLOURS)]


def label_text(det: Detection) -> str:
    return f"{det.class_label} {_round_half_up(det.confidence * 100)}%"


def line_width_for(image_width: int) -> int:
    return max(2, _round_half_up(image_width / 300))


def font_px_for(image_width: int) -> int:
    return max(12, _round_half_up(image_width / 40))


def draw_detections(image: np.ndarray, detections: Sequence[Detection]) -> np.ndarray:
    """Return a copy of ``image`` with every valid detection drawn on it.

    Detections with a non-finite field, or a non-positive width or height,
    are skipped.  Coordinates far outside the image are clamped so OpenCV
    only ever sees small integers.
    """
    canvas = image.copy()
    height, width = canvas.shape[:2]

    thickness = line_width_for(width)
    font_px = font_px_for(width)
    font_scale = cv2.getFontScaleFromHeight(FONT, font_px, 1)
    label_h = font_px + 6

    def px(v: float, limit: int) -> int:
        return _round_half_up(min(max(v, -limit), 2 * limit))

    for det in detections:
        values = (det.center_x, det.center_y, det.width, det.height, det.confidence)
        if not all(math.isfinite(v) for v in values):
            continue
        if det.width <= 0 or det.height <= 0:
            continue

        x = det.center_x - det.width / 2
        y = det.center_y - det.height / 2
        colour = box_colour(det.class_id)

        # Box
        x1, y1 = px(x, width), px(y, height)
        x2, y2 = px(x + det.width, width), px(y + det.height, height)
        cv2.rectangle(canvas, (x1, y1), (x2, y2), colour, thickness)

        # Label background, above the box but never off the top edge
        text = label_text(det)
        (text_w, _), _ = cv2.getTextSize(text, FONT, font_scale, 1)
        label_w = text_w + 8
        label_y = max(0, y1 - label_h)
        cv2.rectangle(canvas, (x1, label_y), (x1 + label_w, label_y + label_h), colour, cv2.FILLED)

        # Label text (origin is the baseline)
        cv2.putText(canvas, text, (x1 + 4, label_y + label_h - 4), FONT, font_scale,
                    LABEL_TEXT_COLOUR, 1, cv2.LINE_AA)

    return canvas


def decode_image(content: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes to a BGR array, or None if OpenCV can't."""
    if not content:
        return None
    buf = np.frombuffer(content, dtype=np.uint8)
    return cv2.imdecode(buf, cv2.IMREAD_COLOR)


# =====================================================================
#  EXPORT
# =====================================================================

class AnnotationExporter:
    """Fetches a completed job's image and renders/saves the annotated copy."""

    def __init__(
        self,
        config: ClientConfig,
        store: JobStore,
        fetch: Callable[..., object] | None = None,
    ):
        self.config = config
        self.store = store
        self._fetch = fetch or requests.get

    async def load_image(self, url: str) -> Optional[np.ndarray]:
        try:
            response = await asyncio.to_thread(self._fetch, url, timeout=self.config.request_timeout)
        except requests.RequestException as e:
            log.warning("Could not load %s: %s", url, e)
            return None
        if not 200 <= response.status_code < 300:
            log.warning("Could not load %s: HTTP %d", url, response.status_code)
            return None
        image = decode_image(response.content)
        if image is None:
            log.warning("Could not decode image from %s", url)
        return image

    async def render(self, job_id: str) -> Optional[np.ndarray]:
        """Annotated image for a job, or None if it has no loadable image."""
        job = self.store.get(job_id)
        if job is None or not job.image_url:
            return None
        image = await self.load_image(job.image_url)
        if image is None:
            return None
        return draw_detections(image, job.detections)

    def save(self, image: np.ndarray, job_id: str, path: Path | None = None) -> Path:
        if path is None:
            out_dir = Path(self.config.output_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            path = out_dir / EXPORT_NAME.format(job_id=job_id)
        if not cv2.imwrite(str(path), image):
            raise IOError(f"Cannot write: {path}")
        return path

    async def export(self, job_id: str) -> Optional[Path]:
        """Render and save; returns the written path, or None if skipped."""
        try:
            image = await self.render(job_id)
            if image is None:
                return None
            path = self.save(image, job_id)
        except (ValueError, IOError, cv2.error) as e:
            log.error("Export of job %s failed: %s", job_id, e, exc_info=True)
            return None
        log.info("Job %s: saved %s", job_id, path)
        return path
