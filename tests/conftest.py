import io
import threading
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from whisprlocal.config import DownloadConfig, TranscriptionConfig
from whisprlocal.lifecycle import ModelLifecycleManager
from whisprlocal.recognizer import Segment, SpeechRecognizer
from whisprlocal.storage import InstalledModel, ModelStorage

WAIT = 5.0


class FakeResponse:
    """Stand-in for a streamed requests.Response"""

    def __init__(
        self,
        url: str,
        status_code: int = 200,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.url = url
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        if status_code == 200:
            self.headers.setdefault("Content-Length", str(len(body)))
        self.gate = gate
        self.started = threading.Event()
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(WAIT)
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeHTTP:
    """Scripted HTTP session; unknown URLs answer 404"""

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.requested: List[str] = []
        self.responses: List[FakeResponse] = []
        self.closed = False

    def serve(self, url: str, body: bytes, gate: Optional[threading.Event] = None) -> FakeResponse:
        response = FakeResponse(url, 200, body, gate=gate)
        self.routes[url] = response
        return response

    def redirect(self, url: str, location: Optional[str], status: int = 302) -> None:
        headers = {"Location": location} if location else {}
        self.routes[url] = FakeResponse(url, status, headers=headers)

    def get(self, url, stream=False, allow_redirects=True, timeout=None):
        assert stream and not allow_redirects
        self.requested.append(url)
        response = self.routes.get(url) or FakeResponse(url, 404)
        self.responses.append(response)
        return response

    def close(self) -> None:
        self.closed = True


class FakeHandle:
    def __init__(self, filename: str):
        self.filename = filename


class FakeRecognizer(SpeechRecognizer):
    """In-memory recognizer recording load/unload order"""

    name = "fake"

    def __init__(self):
        self.calls: List[tuple] = []
        self.loaded: List[FakeHandle] = []
        self.max_loaded = 0
        self.segments: List[Segment] = [Segment("hello world")]
        self.load_error: Optional[Exception] = None
        self.transcribe_error: Optional[Exception] = None
        self.transcribe_gate: Optional[threading.Event] = None
        self.transcribe_started = threading.Event()
        self.transcribed: List[Any] = []
        self._lock = threading.Lock()

    def load(self, primary_path: Path, accelerator_path: Optional[Path] = None) -> Any:
        if self.load_error is not None:
            raise self.load_error
        handle = FakeHandle(primary_path.name)
        with self._lock:
            self.calls.append(("load", handle.filename))
            self.loaded.append(handle)
            self.max_loaded = max(self.max_loaded, len(self.loaded))
        return handle

    def unload(self, handle: Any) -> None:
        with self._lock:
            self.calls.append(("unload", handle.filename))
            self.loaded.remove(handle)

    def transcribe(self, handle: Any, samples, prompt: Optional[str] = None) -> List[Segment]:
        self.transcribe_started.set()
        if self.transcribe_gate is not None:
            self.transcribe_gate.wait(WAIT)
        self.transcribed.append((handle.filename, len(samples), prompt))
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return list(self.segments)


def make_sidecar_zip(files: Dict[str, bytes]) -> bytes:
    """Build a zip archive in memory"""
    data = io.BytesIO()
    with zipfile.ZipFile(data, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return data.getvalue()


def install_model(storage: ModelStorage, filename: str, content: bytes = b"ggml") -> InstalledModel:
    """Put a primary artifact straight into managed storage"""
    storage.ensure_dirs()
    (storage.models_dir / filename).write_bytes(content)
    return storage.find(filename)


@pytest.fixture
def storage(tmp_path):
    return ModelStorage(tmp_path / "models", tmp_path / "state" / "state.yml")


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def download_config():
    return DownloadConfig(chunk_size=4, fetch_sidecar=False)


@pytest.fixture
def transcription_config():
    return TranscriptionConfig(unload_settle_seconds=0.0, release_passes=1)


@pytest.fixture
def events():
    return []


@pytest.fixture
def manager(storage, recognizer, download_config, transcription_config, http, events):
    manager = ModelLifecycleManager(
        storage,
        recognizer,
        download_config=download_config,
        transcription_config=transcription_config,
        http=http,
        on_event=events.append,
    )
    yield manager
    manager.shutdown()
