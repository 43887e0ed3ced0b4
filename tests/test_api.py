import os
import threading
import time

import cv2
import numpy as np
from fastapi.testclient import TestClient

from detector import LazyDetector
from errors import DeviceErrorKind, ModelError, ModelErrorKind, RequestError, RequestErrorKind
from main import USAGE, ResultType, create_app, parse_result_type
from settings import ServiceConfig
from tests.fakes import FakeFrameSource


# ---------------------------------------------------------------------------
#  Static route
# ---------------------------------------------------------------------------

def test_static_file_with_content_length(make_client):
    client, _, _ = make_client()
    r = client.get("/hello.txt")
    assert r.status_code == 200
    assert r.content == b"hello world"
    assert r.headers["content-length"] == "11"
    assert r.headers["content-type"].startswith("text/plain")


def test_root_serves_index(make_client):
    client, _, _ = make_client()
    r = client.get("/")
    assert r.status_code == 200
    assert r.text == "<h1>home</h1>"


def test_directory_serves_its_index(make_client):
    client, _, _ = make_client()
    assert client.get("/docs").text == "<p>docs</p>"
    assert client.get("/docs/").text == "<p>docs</p>"


def test_large_file_streams_in_chunks(make_client, web_root):
    data = os.urandom(10 * 1024 + 7)
    (web_root / "big.bin").write_bytes(data)
    client, _, _ = make_client(chunk_size=1024)
    r = client.get("/big.bin")
    assert r.status_code == 200
    assert r.headers["content-length"] == str(len(data))
    assert r.content == data


def test_exact_multiple_of_chunk_size(make_client, web_root):
    data = b"a" * 4096
    (web_root / "even.bin").write_bytes(data)
    client, _, _ = make_client(chunk_size=1024)
    assert client.get("/even.bin").content == data


def test_empty_file(make_client, web_root):
    (web_root / "empty.txt").write_bytes(b"")
    client, _, _ = make_client()
    r = client.get("/empty.txt")
    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["content-length"] == "0"


def test_missing_file_is_400_with_cause(make_client):
    client, _, _ = make_client()
    r = client.get("/nope.txt")
    assert r.status_code == 400
    assert r.text.startswith("Could not open path /nope.txt: ")
    assert "no such file" in r.text


def test_encoded_traversal_is_rejected(make_client):
    client, _, _ = make_client()
    r = client.get("/..%2Fsecret.txt")
    assert r.status_code == 400
    assert "path must be within root path" in r.text
    assert "do not serve" not in r.text


def test_symlink_escape_is_rejected(make_client, web_root):
    os.symlink(web_root.parent / "secret.txt", web_root / "leak.txt")
    client, _, _ = make_client()
    r = client.get("/leak.txt")
    assert r.status_code == 400
    assert "do not serve" not in r.text


# ---------------------------------------------------------------------------
#  /getResult query validation
# ---------------------------------------------------------------------------

def test_parse_result_type():
    assert parse_result_type([("type", "json")]) is ResultType.JSON
    assert parse_result_type([("type", "image")]) is ResultType.IMAGE
    assert parse_result_type([]).kind is RequestErrorKind.MISSING_PARAM
    assert parse_result_type([("kind", "json")]).kind is RequestErrorKind.MISSING_PARAM
    assert parse_result_type([("type", "json"), ("x", "1")]).kind is RequestErrorKind.TOO_MANY_PARAMS
    err = parse_result_type([("type", "video")])
    assert isinstance(err, RequestError)
    assert str(err) == "Wrong value: video"


def test_parameter_count_errors_stay_distinct():
    assert len(RequestErrorKind) == 3
    assert RequestErrorKind.TOO_MANY_PARAMS is not RequestErrorKind.MISSING_PARAM
    assert parse_result_type([]).kind.name == "MISSING_PARAM"
    assert parse_result_type([("type", "json"), ("x", "1")]).kind.name == "TOO_MANY_PARAMS"
    assert str(RequestError(RequestErrorKind.TOO_MANY_PARAMS)) == "Wrong parameter"
    assert str(RequestError(RequestErrorKind.MISSING_PARAM)) == "Wrong parameter"


def test_no_parameters_returns_usage(make_client):
    client, detector, source = make_client()
    r = client.get("/getResult")
    assert r.status_code == 200
    assert "Wrong parameter" in r.text
    assert USAGE in r.text
    assert source.calls == 0


def test_two_parameters_return_usage(make_client):
    client, detector, source = make_client(rects=[(1, 2, 3, 4)])
    r = client.get("/getResult?type=json&x=1")
    assert r.status_code == 200
    assert USAGE in r.text
    assert "faces" not in r.text
    assert source.calls == 0
    assert detector.frames == []


def test_repeated_type_counts_twice(make_client):
    client, _, source = make_client()
    r = client.get("/getResult?type=json&type=image")
    assert USAGE in r.text
    assert source.calls == 0


def test_unknown_value_does_not_touch_camera(make_client):
    client, detector, source = make_client()
    r = client.get("/getResult?type=video")
    assert r.status_code == 200
    assert "Wrong value: video" in r.text
    assert source.calls == 0
    assert detector.frames == []


# ---------------------------------------------------------------------------
#  /getResult?type=json
# ---------------------------------------------------------------------------

def test_json_without_faces(make_client):
    client, _, source = make_client()
    r = client.get("/getResult?type=json")
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/json"
    assert r.text == '{"faces":[]}'
    assert source.calls == 1


def test_json_single_face(make_client):
    client, _, _ = make_client(rects=[(1, 2, 3, 4)])
    r = client.get("/getResult?type=json")
    assert r.text == '{"faces":[{"x":1,"y":2,"width":3,"height":4}]}'


def test_json_preserves_detector_order(make_client):
    rects = [(50, 60, 10, 10), (1, 2, 3, 4), (20, 5, 7, 8)]
    client, _, _ = make_client(rects=rects)
    faces = client.get("/getResult?type=json").json()["faces"]
    assert [(f["x"], f["y"], f["width"], f["height"]) for f in faces] == rects


def test_camera_error_is_reported_with_200(make_client, camera_missing):
    client, detector, _ = make_client(frame_source=camera_missing)
    r = client.get("/getResult?type=json")
    assert r.status_code == 200
    assert "Cannot open camera" in r.text
    assert detector.frames == []


def test_camera_read_failure_is_reported(make_client):
    client, _, _ = make_client(frame_source=FakeFrameSource(error=DeviceErrorKind.READ_FAILED))
    r = client.get("/getResult?type=image")
    assert r.status_code == 200
    assert "Cannot read image from camera" in r.text


def test_detector_load_failure_is_reported(web_root):
    def broken():
        raise ModelError(ModelErrorKind.NOT_FOUND, "missing.xml")

    source = FakeFrameSource()
    app = create_app(ServiceConfig(web_root=web_root), detector=LazyDetector(broken),
                     frame_source=source)
    with TestClient(app) as client:
        r = client.get("/getResult?type=json")
    assert r.status_code == 200
    assert "Error loading face detector" in r.text
    assert "missing.xml" in r.text
    assert source.calls == 0


def test_detector_exception_is_reported(make_client):
    client, detector, _ = make_client()

    def explode(frame):
        raise RuntimeError("bad frame")
    detector.detect = explode

    r = client.get("/getResult?type=json")
    assert r.status_code == 200
    assert "Detection failed: bad frame" in r.text


def test_hung_camera_times_out(make_client):
    release = threading.Event()

    class SlowSource(FakeFrameSource):
        def capture(self):
            release.wait(5)
            return super().capture()

    client, _, _ = make_client(frame_source=SlowSource(), detection_timeout_seconds=0.1)
    try:
        r = client.get("/getResult?type=json")
        assert r.status_code == 200
        assert "Camera did not respond in time" in r.text
    finally:
        release.set()


def test_busy_camera_fails_fast(make_client):
    client, _, source = make_client(device_wait_seconds=0.05)
    lock = client.app.state.detection._device_lock
    lock.acquire()
    try:
        r = client.get("/getResult?type=json")
    finally:
        lock.release()
    assert r.status_code == 200
    assert "Camera is busy" in r.text
    assert source.calls == 0


# ---------------------------------------------------------------------------
#  /getResult?type=image
# ---------------------------------------------------------------------------

def test_image_is_written_and_served_back(make_client, web_root):
    frame = np.full((120, 160, 3), 200, dtype=np.uint8)
    client, _, _ = make_client(rects=[(10, 20, 30, 40)], frame_source=FakeFrameSource(frame))

    r = client.get("/getResult?type=image")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert '<img src="image.jpg">' in r.text

    saved = web_root / "image.jpg"
    assert saved.is_file()
    image = client.get("/image.jpg")
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/jpeg"
    assert image.content == saved.read_bytes()

    decoded = cv2.imdecode(np.frombuffer(image.content, np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == frame.shape


def test_image_is_overwritten_per_request(make_client, web_root):
    client, _, _ = make_client()
    client.get("/getResult?type=image")
    first = (web_root / "image.jpg").stat().st_mtime_ns
    time.sleep(0.01)
    client.get("/getResult?type=image")
    assert (web_root / "image.jpg").stat().st_mtime_ns >= first
    assert not (web_root / ".image.partial.jpg").exists()


# ---------------------------------------------------------------------------
#  Misc
# ---------------------------------------------------------------------------

def test_health(make_client, web_root):
    client, _, _ = make_client()
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["web_root"] == str(web_root.resolve())
    assert body["detector_loaded"] is False
    client.get("/getResult?type=json")
    assert client.get("/health").json()["detector_loaded"] is True


def test_post_is_not_allowed(make_client):
    client, _, _ = make_client()
    assert client.post("/hello.txt").status_code == 405
