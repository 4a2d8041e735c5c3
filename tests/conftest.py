"""Shared fakes for the pipeline tests."""

import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from audiobookforge.blobstore import LocalBlobStore
from audiobookforge.config import Settings
from audiobookforge.jobs import SynthesisJobManager
from audiobookforge.models import JobStatus, MasteringResult
from audiobookforge.storage import MemoryStorage
from audiobookforge.tts.base import ProviderTask, TransientProviderError, TTSProvider


class FakeProvider(TTSProvider):
    """In-memory provider. ``fail_when(text)`` returning an exception class makes a call fail."""

    max_request_size = 2800
    size_unit = "chars"
    supports_markup = False

    def __init__(self, settings=None, fail_when=None, delay=0.0):
        super().__init__(settings)
        self.calls = []
        self.fail_when = fail_when
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def initialize(self) -> None:
        pass

    def synthesize(self, text, voice_id, rate=1.0, pitch=0.0):
        with self._lock:
            self.calls.append((text, voice_id, rate))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            error = self.fail_when(text) if self.fail_when else None
            if error is not None:
                raise error(f"synthesis failed for {text[:20]!r}")
            return b"MP3:" + text.encode("utf-8")
        finally:
            with self._lock:
                self.active -= 1

    def list_voices(self, language=None):
        return [{"name": "fake-voice", "language": "es-ES", "gender": "Female"}]

    @property
    def name(self):
        return "Fake TTS"


class FlakyProvider(FakeProvider):
    """Fails the first ``failures`` calls with ``error``, then succeeds."""

    def __init__(self, settings=None, failures=1, error=TransientProviderError):
        super().__init__(settings)
        self.failures = failures
        self.error = error

    def synthesize(self, text, voice_id, rate=1.0, pitch=0.0):
        with self._lock:
            failing = self.failures > 0
            self.failures -= 1
        if failing:
            self.calls.append((text, voice_id, rate))
            raise self.error("temporary outage")
        return super().synthesize(text, voice_id, rate, pitch)


class FakeTaskProvider(FakeProvider):
    """Provider with asynchronous tasks; statuses are served from ``states`` in order."""

    supports_markup = True
    supports_tasks = True
    task_size_limit = 100_000

    def __init__(self, settings=None, states=("in_progress", "completed"), reason=None):
        super().__init__(settings)
        self.states = list(states)
        self.reason = reason
        self.started = []
        self.polls = 0

    def start_task(self, text, voice_id, rate=1.0, pitch=0.0):
        self.started.append(text)
        return f"task-{len(self.started)}"

    def get_task_status(self, handle):
        self.polls += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return ProviderTask(handle=handle, state=state, output_uri=f"s3://bucket/{handle}.mp3", reason=self.reason)

    def fetch_task_audio(self, task):
        return b"MP3:task:" + task.handle.encode()


class ScriptedMastering:
    """Stands in for MasteringEngine: copies input to output, or reports a failure."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def master(self, input_path, output_path, metadata=None, job_tag="master"):
        self.calls.append((Path(input_path), Path(output_path), metadata, job_tag))
        if self.fail:
            return MasteringResult(success=False, error="Loudness analysis produced no usable loudnorm report")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(input_path, output_path)
        return MasteringResult(success=True, output_path=Path(output_path), duration_sec=1.5)


class RecordingStorage(MemoryStorage):
    """MemoryStorage that remembers every job status change."""

    def __init__(self):
        super().__init__()
        self.transitions = []

    def update_job(self, job_id, **fields):
        job = super().update_job(job_id, **fields)
        if "status" in fields:
            self.transitions.append((job_id, JobStatus(fields["status"])))
        return job


def join_files(files, output_path, timeout=None):
    """Byte-level stand-in for ffmpeg concatenation."""
    Path(output_path).write_bytes(b"".join(Path(f).read_bytes() for f in files))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "output",
        retry_backoff_seconds=0,
        retry_max_wait_seconds=0,
        task_poll_interval=0,
        task_timeout=5,
        job_max_retries=3,
        parallel_chapter_limit=3,
    )


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def provider(settings):
    return FakeProvider(settings)


@pytest.fixture
def mastering():
    return ScriptedMastering()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


def make_manager(storage, provider, mastering, blob_store, settings, on_progress=None):
    registry = MagicMock()
    registry.get.return_value = provider
    return SynthesisJobManager(storage, registry, mastering, blob_store, settings=settings, on_progress=on_progress)


@pytest.fixture
def manager(storage, provider, mastering, blob_store, settings):
    return make_manager(storage, provider, mastering, blob_store, settings)


def make_project(storage, chapters, provider="fake", speech_rate="100%", **fields):
    """Create a project with ``chapters`` given as (title, text) pairs."""
    project = storage.create_project("El libro", "fake-voice", provider, speech_rate=speech_rate, **fields)
    created = [
        storage.add_chapter(project.id, number, title, text)
        for number, (title, text) in enumerate(chapters, start=1)
    ]
    return storage.get_project(project.id), created


def read_from_threads(read, count=4):
    """Call ``read`` from ``count`` threads released together; return every result."""
    barrier = threading.Barrier(count)

    def worker(_):
        barrier.wait()
        return read()

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


def slow_factory(delay=0.05):
    """A client factory that takes long enough for concurrent callers to overlap."""
    def build(*args, **kwargs):
        time.sleep(delay)
        return MagicMock()
    return build
