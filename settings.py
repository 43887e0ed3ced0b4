"""
Face Detection Service — Startup Configuration
==============================================

Every value is a startup-time constant read once from the environment.
Nothing here is negotiated at runtime; restart the service to change it.

    config = ServiceConfig.from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ServiceConfig:

    # -- Network --
    host: str = "0.0.0.0"
    port: int = 8080

    # -- Static files --
    web_root: Path = Path("web")
    default_document: str = "index.html"
    chunk_size: int = 128 * 1024

    # -- Detection --
    model_path: str = "haarcascade_frontalface_default.xml"
    detector_backend: str = "cascade"       # cascade | yolo
    camera_index: int = 0
    result_image_name: str = "image.jpg"
    preload_model: bool = False

    # -- Device guard --
    detection_timeout_seconds: float = 10.0
    device_wait_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Build the config from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            host=os.getenv("HOST", defaults.host),
            port=int(os.getenv("PORT", str(defaults.port))),
            web_root=Path(os.getenv("WEB_ROOT", str(defaults.web_root))),
            chunk_size=int(os.getenv("CHUNK_SIZE", str(defaults.chunk_size))),
            model_path=os.getenv("MODEL_PATH", defaults.model_path),
            detector_backend=os.getenv("DETECTOR_BACKEND", defaults.detector_backend).lower(),
            camera_index=int(os.getenv("CAMERA_INDEX", str(defaults.camera_index))),
            result_image_name=os.getenv("RESULT_IMAGE_NAME", defaults.result_image_name),
            preload_model=os.getenv("PRELOAD_MODEL", "0") in ("1", "true", "yes"),
            detection_timeout_seconds=float(
                os.getenv("DETECTION_TIMEOUT_SECONDS", str(defaults.detection_timeout_seconds))
            ),
            device_wait_seconds=float(
                os.getenv("DEVICE_WAIT_SECONDS", str(defaults.device_wait_seconds))
            ),
        )
