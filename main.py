"""
Face Detection Service — HTTP Front End
=======================================

FastAPI service that serves a static web root and, on one endpoint,
photographs the scene with the local camera and reports the faces in it.

Endpoints:
    GET  /getResult?type=json   — face rectangles as JSON
    GET  /getResult?type=image  — HTML fragment showing the annotated frame
    GET  /health                — liveness probe
    GET  /<path>                — static files from WEB_ROOT (index.html for dirs)

Everything is configured at startup from the environment (see settings.py).
A web root that cannot be resolved stops the service before it binds.

Static files are streamed chunk by chunk (webroot.py).  Each chunk is
handed to the server as a view into one reusable read buffer, which is
only safe because uvicorn runs with the h11 protocol on the asyncio loop:
h11 serializes the chunk into its own output bytes before ``send``
returns.  main() pins both settings.

Run locally:
    python main.py
    uvicorn --factory main:create_app --http h11 --loop asyncio --port 8080
"""

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from enum import Enum

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from detector import (
    CameraFrameSource,
    DetectionService,
    FrameSource,
    LazyDetector,
    detector_factory,
)
from errors import ModelError, PathError, PersistError, RequestError, RequestErrorKind, ServiceError
from formatter import to_html, to_image, to_json
from settings import ServiceConfig
from webroot import ChunkedFileResponse, ChunkedFileStreamer, PathResolver, StreamCursor


# ---------------------------------------------------------------------------
#  Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("facedetect-api")

USAGE = "Usage: ?type={ json | image }"


class ResultType(str, Enum):
    JSON = "json"
    IMAGE = "image"


# ---------------------------------------------------------------------------
#  Request parsing
# ---------------------------------------------------------------------------

def parse_result_type(params: list[tuple[str, str]]) -> ResultType | RequestError:
    """Accept exactly one query parameter, ``type``, valued json or image."""
    if not params:
        return RequestError(RequestErrorKind.MISSING_PARAM)
    if len(params) > 1:
        return RequestError(RequestErrorKind.TOO_MANY_PARAMS)
    name, value = params[0]
    if name != "type":
        return RequestError(RequestErrorKind.MISSING_PARAM)
    try:
        return ResultType(value)
    except ValueError:
        return RequestError(RequestErrorKind.UNKNOWN_VALUE, value)


def _usage_response(error: RequestError) -> PlainTextResponse:
    # Malformed queries still get 200, like every other /getResult outcome.
    return PlainTextResponse(f"{error}\n{USAGE}\n")


def _text_response(error: ServiceError) -> PlainTextResponse:
    return PlainTextResponse(f"{error}\n")


# ---------------------------------------------------------------------------
#  Response strategies (run in the worker thread, under the device lock)
# ---------------------------------------------------------------------------

def _json_strategy(frame, rects) -> Response:
    return Response(to_json(rects), media_type="application/json")


def _image_strategy(target):
    def _strategy(frame, rects) -> Response | PersistError:
        saved = to_image(frame, rects, target)
        if isinstance(saved, PersistError):
            return saved
        return HTMLResponse(to_html(saved.name))
    return _strategy


# ---------------------------------------------------------------------------
#  Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Liveness probe with the state of the detector and the camera."""
    state = request.app.state
    return {
        "status": "healthy",
        "web_root": str(state.resolver.root),
        "detector_loaded": state.detector.loaded,
        "device_busy": state.detection.busy,
    }


@router.get("/getResult")
async def get_result(request: Request):
    """Capture a frame, detect faces and answer as JSON or annotated image.

    Requires exactly one query parameter, ``type=json`` or ``type=image``.
    Anything else is answered with the usage text and never reaches the
    camera.  Internal failures are reported as body text with status 200.
    """
    result_type = parse_result_type(request.query_params.multi_items())
    if isinstance(result_type, RequestError):
        log.info("Rejected /getResult query %r: %s", request.url.query, result_type)
        return _usage_response(result_type)

    state = request.app.state
    detector = await asyncio.to_thread(state.detector.get)
    if isinstance(detector, ModelError):
        return PlainTextResponse(f"Error loading face detector: {detector}\n")

    if result_type is ResultType.JSON:
        strategy = _json_strategy
    else:
        strategy = _image_strategy(state.resolver.root / state.config.result_image_name)

    try:
        outcome = await state.detection.run(detector, strategy)
    except Exception as e:
        log.error("Detection failed: %s", e, exc_info=True)
        return PlainTextResponse(f"Detection failed: {e}\n")

    if isinstance(outcome, ServiceError):
        return _text_response(outcome)
    return outcome


def _open_static(resolver: PathResolver, path: str) -> StreamCursor | PathError:
    resolved = resolver.resolve(path)
    if isinstance(resolved, PathError):
        return resolved
    return StreamCursor.open(resolved)


@router.get("/{path:path}")
async def serve_static(path: str, request: Request):
    """Stream a file from the web root; any resolution failure is a 400."""
    state = request.app.state
    cursor = await asyncio.to_thread(_open_static, state.resolver, path)
    if isinstance(cursor, PathError):
        return PlainTextResponse(f"Could not open path /{path}: {cursor}", status_code=400)
    return ChunkedFileResponse(cursor, state.streamer)


# ---------------------------------------------------------------------------
#  App factory
# ---------------------------------------------------------------------------

def create_app(
    config: ServiceConfig | None = None,
    detector: LazyDetector | None = None,
    frame_source: FrameSource | None = None,
) -> FastAPI:
    """Build the application.

    ``detector`` and ``frame_source`` default to the Haar/YOLO detector and
    the local camera named in ``config``; tests pass fakes.  Raises
    ``RootError`` if the web root does not exist.
    """
    config = config or ServiceConfig.from_env()
    resolver = PathResolver(config.web_root, config.default_document)
    detector = detector or LazyDetector(
        detector_factory(config.model_path, config.detector_backend)
    )
    frame_source = frame_source or CameraFrameSource(config.camera_index)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Serving %s (chunk size %d bytes)", resolver.root, config.chunk_size)
        if config.preload_model:
            # Load in the background so the port binds immediately.
            threading.Thread(target=detector.get, daemon=True).start()
        yield
        log.info("Shutting down")

    app = FastAPI(
        title="Face Detection Service",
        description=(
            "Serves a static web root and detects faces in a fresh camera "
            "frame on /getResult."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.resolver = resolver
    app.state.streamer = ChunkedFileStreamer(config.chunk_size)
    app.state.detector = detector
    app.state.detection = DetectionService(
        frame_source,
        timeout=config.detection_timeout_seconds,
        device_wait=config.device_wait_seconds,
    )
    app.include_router(router)
    return app


def main():
    config = ServiceConfig.from_env()
    app = create_app(config)
    log.info("Server starting on %s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port,
                http="h11", loop="asyncio", log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
