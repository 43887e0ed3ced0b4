import pytest
from fastapi.testclient import TestClient

from detector import LazyDetector
from errors import DeviceErrorKind
from main import create_app
from settings import ServiceConfig
from tests.fakes import FakeDetector, FakeFrameSource


@pytest.fixture
def web_root(tmp_path):
    root = tmp_path / "web"
    root.mkdir()
    (root / "index.html").write_text("<h1>home</h1>")
    (root / "hello.txt").write_bytes(b"hello world")
    (root / "docs").mkdir()
    (root / "docs" / "index.html").write_text("<p>docs</p>")
    (tmp_path / "secret.txt").write_text("do not serve")
    return root


@pytest.fixture
def make_client(web_root):
    clients = []

    def _make(rects=(), frame_source=None, chunk_size=1024, **overrides):
        config = ServiceConfig(web_root=web_root, chunk_size=chunk_size, **overrides)
        detector = FakeDetector(rects)
        source = frame_source or FakeFrameSource()
        app = create_app(config, detector=LazyDetector(lambda: detector), frame_source=source)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, detector, source

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture
def camera_missing():
    return FakeFrameSource(error=DeviceErrorKind.NOT_OPEN)
