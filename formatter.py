"""
Rendering of detection results: JSON coordinates or an annotated image.
"""

from __future__ import annotations

import html
import logging
import os
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np
from pydantic import BaseModel

from detector import Rect
from errors import PersistError, PersistErrorKind

log = logging.getLogger("facedetect-api.formatter")

PAGE_TITLE = "<h1>Face Detection Service</h1>"
RECT_COLOUR = (255, 0, 255)   # BGR
RECT_THICKNESS = 2


class Face(BaseModel):
    x: int
    y: int
    width: int
    height: int


class FacesPayload(BaseModel):
    """Body of ``/getResult?type=json``."""
    faces: list[Face]


def to_json(rects: Sequence[Rect]) -> str:
    """Compact JSON, detector order preserved; no faces gives ``{"faces":[]}``."""
    payload = FacesPayload(
        faces=[Face(x=r.x, y=r.y, width=r.width, height=r.height) for r in rects]
    )
    return payload.model_dump_json()


def annotate(frame: np.ndarray, rects: Sequence[Rect]) -> np.ndarray:
    annotated = frame.copy()
    for r in rects:
        cv2.rectangle(annotated, (r.x, r.y), (r.x + r.width, r.y + r.height),
                      RECT_COLOUR, RECT_THICKNESS)
    return annotated


def to_image(frame: np.ndarray, rects: Sequence[Rect], target: Path) -> Path | PersistError:
    """Write the annotated frame to ``target``.

    The image is encoded to a hidden sibling file first and moved into
    place with ``os.replace``, so a concurrent download of ``target``
    sees either the previous image or the new one, never half of it.
    """
    annotated = annotate(frame, rects)
    tmp = target.with_name(f".{target.stem}.partial{target.suffix}")
    try:
        if not cv2.imwrite(str(tmp), annotated):
            return PersistError(PersistErrorKind.WRITE_FAILED, target.name)
        os.replace(tmp, target)
    except (cv2.error, OSError) as e:
        log.error("Could not save annotated image %s: %s", target, e)
        tmp.unlink(missing_ok=True)
        return PersistError(PersistErrorKind.WRITE_FAILED, str(e))
    return target


def to_html(image_name: str) -> str:
    return f'{PAGE_TITLE}<img src="{html.escape(image_name)}">'
