import io

import pytest

from voicememo.pipeline.models import Task, TaskMode, TaskStatus
from voicememo.server.app import create_app
from voicememo.server.task_store import TaskStore

AUDIO = b"RIFF" + b"\x00" * 2048


class StubQueue:
    def __init__(self):
        self.submitted = []
        self.running = set()
        self.accept = True

    def submit(self, task_id, action="start", **kwargs):
        if not self.accept or task_id in self.running:
            return False
        self.submitted.append((task_id, action, kwargs))
        return True

    def is_task_running(self, task_id):
        return task_id in self.running

    def stop_task(self, task_id):
        return task_id in self.running

    def get_queue_status(self):
        return {"is_running": True, "running_tasks": sorted(self.running), "max_workers": 2}


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "tasks"))


@pytest.fixture
def queue():
    return StubQueue()


@pytest.fixture
def client(store, queue, monkeypatch):
    monkeypatch.delenv("AUTOSTART", raising=False)
    app = create_app(store, queue)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"
    assert response.get_json()["queue_running"] is True


def test_create_mixed_task(client, store, queue):
    response = client.post(
        "/tasks",
        data={"file": (io.BytesIO(AUDIO), "Team Sync.m4a"), "title": "Team sync", "recording_id": "rec-7"},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["status"] == "recorded"
    assert body["mode"] == "mixed"
    assert body["recording_id"] == "rec-7"
    assert body["mixed"]["audio_path"].endswith("mixed.m4a")
    assert queue.submitted == [(body["id"], "start", {})]

    task = store.load_task(body["id"])
    assert task.title == "Team sync"
    assert open(task.mixed.audio_path, "rb").read() == AUDIO
    assert task.local_file_path == task.mixed.audio_path


def test_create_separated_task_without_autostart(client, store, queue):
    response = client.post(
        "/tasks",
        data={
            "speaker1": (io.BytesIO(AUDIO), "local.caf"),
            "speaker2": (io.BytesIO(AUDIO), "remote.caf"),
            "autostart": "false",
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    task = store.load_task(response.get_json()["id"])
    assert task.mode is TaskMode.SEPARATED
    assert task.speaker1.audio_path.endswith("speaker1.caf")
    assert task.speaker2.audio_path.endswith("speaker2.caf")
    assert task.speaker1.status is TaskStatus.RECORDED
    assert queue.submitted == []


def test_create_task_with_non_ascii_filename(client, store, queue):
    response = client.post(
        "/tasks",
        data={"file": (io.BytesIO(AUDIO), "会议.M4A"), "autostart": "false"},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    task = store.load_task(response.get_json()["id"])
    assert task.mixed.audio_path.endswith("mixed.m4a")
    assert open(task.mixed.audio_path, "rb").read() == AUDIO
    assert queue.submitted == []


def test_create_task_rejects_bad_uploads(client, store):
    assert client.post("/tasks", data={}, content_type="multipart/form-data").status_code == 400

    only_one = {"speaker1": (io.BytesIO(AUDIO), "local.wav")}
    assert client.post("/tasks", data=only_one, content_type="multipart/form-data").status_code == 400

    wrong_type = {"file": (io.BytesIO(AUDIO), "notes.txt")}
    response = client.post("/tasks", data=wrong_type, content_type="multipart/form-data")
    assert response.status_code == 400
    assert "File type not allowed" in response.get_json()["error"]

    empty = {"file": (io.BytesIO(b""), "empty.wav")}
    response = client.post("/tasks", data=empty, content_type="multipart/form-data")
    assert response.status_code == 400
    assert store.load_tasks() == []


def test_get_and_list_tasks(client, store):
    done = Task(recording_id="a", status=TaskStatus.COMPLETED, transcript="hi")
    pending = Task(recording_id="b")
    store.save_task(done)
    store.save_task(pending)

    assert client.get(f"/tasks/{done.id}").get_json()["transcript"] == "hi"
    assert client.get("/tasks/unknown").status_code == 404

    body = client.get("/tasks?status=completed").get_json()
    assert [t["id"] for t in body["tasks"]] == [done.id]
    assert client.get("/tasks").get_json()["total"] == 2
    assert client.get("/tasks?limit=1&offset=1").get_json()["limit"] == 1
    assert client.get("/tasks?status=bogus").status_code == 400


def test_start_actions(client, store, queue):
    task = Task(recording_id="a")
    store.save_task(task)

    assert client.post(f"/tasks/{task.id}/start").status_code == 202
    response = client.post(f"/tasks/{task.id}/start", json={"step": "polling"})
    assert response.status_code == 202
    assert queue.submitted == [(task.id, "start", {}), (task.id, "run_from", {"step": TaskStatus.POLLING})]

    assert client.post(f"/tasks/{task.id}/start", json={"step": "transcoding"}).status_code == 400
    assert client.post("/tasks/unknown/start").status_code == 404


def test_retry_restart_and_check(client, store, queue):
    mixed = Task(recording_id="a")
    separated = Task.for_separated("b", "/tmp/1.wav", "/tmp/2.wav")
    store.save_task(mixed)
    store.save_task(separated)

    assert client.post(f"/tasks/{mixed.id}/retry", json={"speaker": 1}).status_code == 400
    assert client.post(f"/tasks/{separated.id}/retry", json={"speaker": 3}).status_code == 400
    assert client.post(f"/tasks/{separated.id}/retry", json={"speaker": 2}).status_code == 202
    assert client.post(f"/tasks/{mixed.id}/retry").status_code == 202
    assert client.post(f"/tasks/{mixed.id}/restart").status_code == 202
    assert client.post(f"/tasks/{mixed.id}/check").status_code == 202

    assert queue.submitted == [
        (separated.id, "retry", {"speaker": 2}),
        (mixed.id, "retry", {"speaker": None}),
        (mixed.id, "restart", {}),
        (mixed.id, "check", {}),
    ]


def test_busy_task_conflicts(client, store, queue):
    task = Task(recording_id="a")
    store.save_task(task)
    queue.running.add(task.id)

    assert client.post(f"/tasks/{task.id}/retry").status_code == 409
    assert client.delete(f"/tasks/{task.id}").status_code == 409
    assert client.post(f"/tasks/{task.id}/stop").status_code == 200
    assert client.get(f"/tasks/{task.id}").get_json()["is_processing"] is True

    queue.running.clear()
    assert client.post(f"/tasks/{task.id}/stop").status_code == 409


def test_delete_task(client, store):
    task = Task(recording_id="a")
    store.save_task(task)

    assert client.delete(f"/tasks/{task.id}").status_code == 200
    assert not store.task_exists(task.id)
    assert client.delete(f"/tasks/{task.id}").status_code == 404


def test_queue_status(client, queue):
    queue.running.add("t-1")
    assert client.get("/queue/status").get_json()["running_tasks"] == ["t-1"]
