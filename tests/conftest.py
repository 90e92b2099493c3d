import io

import pytest
from PIL import Image

from common.job_schema import ImageAnalysis
from common.remote import RemoteServiceError
from common.storage import MemStorage


def jpeg_bytes(color=(200, 60, 40), size=(500, 500)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG", quality=90)
    return buf.getvalue()


class ManualExecutor:
    """Collects submitted work until the test runs it."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args):
        self.pending.append((fn, args))

    def run_all(self):
        results = [fn(*args) for fn, args in self.pending]
        self.pending = []
        return results

    def shutdown(self, wait=False):
        pass


class RecordingScheduler:
    def __init__(self):
        self.calls = []

    def __call__(self, delay, fn, *args):
        self.calls.append((delay, fn, args))

    def fire(self):
        for _, fn, args in self.calls:
            fn(*args)


class FakeRemote:
    def __init__(self, analysis=None, fail_analyze=False, fail_transform=False, result=None):
        self.analysis = analysis or ImageAnalysis()
        self.fail_analyze = fail_analyze
        self.fail_transform = fail_transform
        self.result = result or jpeg_bytes((30, 120, 200), (640, 480))
        self.transform_calls = []
        self.can_analyze = True
        self.can_transform = True

    def analyze(self, image_bytes):
        if self.fail_analyze:
            raise RemoteServiceError("rate limited")
        return self.analysis

    def transform(self, source_path, mode, parameters=None):
        self.transform_calls.append((source_path, mode))
        if self.fail_transform:
            raise RemoteServiceError("model unavailable")
        return "https://replicate.delivery/result.png"

    def download(self, url):
        return self.result


@pytest.fixture
def store():
    return MemStorage()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def source_image(tmp_path):
    def _make(color=(200, 60, 40), size=(500, 500), name="source.jpg"):
        path = tmp_path / "input" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(jpeg_bytes(color, size))
        return path
    return _make
