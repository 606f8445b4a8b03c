import threading
import time

import pytest

from voicememo.errors import TransportError
from voicememo.pipeline.models import Task
from voicememo.pipeline.orchestrator import MeetingPipeline, PipelineSettings
from voicememo.client.speech_api import RemoteTaskStatus


def remote_result(text):
    """A completed backend payload whose inline transcription is one paragraph."""
    return {
        "TaskStatus": "COMPLETED",
        "TaskKey": "key-1",
        "Result": {"Transcription": {"Paragraphs": [{"Text": text, "SpeakerId": 1}]}},
    }


class FakeObjectStore:
    def __init__(self, fail_keys=(), delay=0.0):
        self.fail_keys = set(fail_keys)
        self.delay = delay
        self.uploads = []

    def upload(self, local_path, key):
        time.sleep(self.delay)
        self.uploads.append((local_path, key))
        if any(key.endswith(suffix) for suffix in self.fail_keys):
            raise TransportError(f"Access denied for {key}", code=403)
        return f"https://bucket.example.com/{key}"


class FakeSpeechClient:
    """
    Remote task backend keyed by track name.

    ``results`` maps a track name (mixed, speaker1, speaker2) to the payload
    the finished task reports; ``pending`` maps a track name to the number of
    RUNNING answers before that payload is returned.
    """

    def __init__(self, results=None, pending=None, artifacts=None, delay=0.0):
        self.results = results or {}
        self.pending = dict(pending or {})
        self.artifacts = artifacts or {}
        self.delay = delay
        self.created = []
        self.status_calls = []
        self._lock = threading.Lock()

    def create_task(self, file_url, summarize=True):
        time.sleep(self.delay)
        track = file_url.rsplit("/", 1)[-1].split(".")[0]
        with self._lock:
            self.created.append((file_url, summarize))
        return f"remote-{track}"

    def get_status(self, task_id):
        time.sleep(self.delay)
        track = task_id[len("remote-"):]
        with self._lock:
            self.status_calls.append(task_id)
            if self.pending.get(track, 0) > 0:
                self.pending[track] -= 1
                return RemoteTaskStatus.RUNNING, {"TaskStatus": "ONGOING"}

        payload = self.results.get(track, remote_result(f"hello from {track}"))
        if isinstance(payload, Exception):
            raise payload
        if payload.get("TaskStatus") == "FAILED":
            return RemoteTaskStatus.FAILED, payload
        return RemoteTaskStatus.SUCCESS, payload

    def fetch_json(self, url):
        if url not in self.artifacts:
            raise TransportError(f"GET {url} failed: 404 Not Found", code=404)
        return self.artifacts[url]


class FakeTranscoder:
    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.calls = []

    def convert(self, input_path, output_path):
        self.calls.append((input_path, output_path))
        if self.error:
            raise self.error
        if not self.ok:
            return False
        with open(output_path, "wb") as f:
            f.write(b"m4a-audio")
        return True


class MemoryStore:
    """Persistence that keeps every saved snapshot."""

    def __init__(self, error=None):
        self.error = error
        self.history = []
        self.tasks = {}
        self._lock = threading.Lock()

    def save_task(self, task):
        if self.error:
            raise self.error
        with self._lock:
            self.history.append(task.copy())
            self.tasks[task.id] = task.copy()


def write_audio(path, content=b"RIFF....WAVEfmt "):
    path.write_bytes(content)
    return str(path)


@pytest.fixture
def mixed_task(tmp_path):
    return Task.for_mixed("rec-001", write_audio(tmp_path / "meeting.wav"), title="Weekly sync")


@pytest.fixture
def separated_task(tmp_path):
    return Task.for_separated(
        "rec-002",
        write_audio(tmp_path / "local.wav"),
        write_audio(tmp_path / "remote.wav"),
        title="Call",
    )


@pytest.fixture
def make_pipeline():
    """Build pipelines wired to fakes; every pipeline is closed after the test."""
    pipelines = []

    def factory(task, store=None, object_store=None, speech_client=None, transcoder=None, **settings):
        settings.setdefault("poll_interval", 0)
        pipeline = MeetingPipeline(
            task,
            store or MemoryStore(),
            object_store or FakeObjectStore(),
            speech_client or FakeSpeechClient(),
            transcoder or FakeTranscoder(),
            settings=PipelineSettings(**settings),
        )
        pipelines.append(pipeline)
        return pipeline

    yield factory

    for pipeline in pipelines:
        pipeline.stop()
        pipeline.close()


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False
