import threading

import pytest
from conftest import FakeObjectStore, FakeSpeechClient, FakeTranscoder, wait_for

from voicememo.pipeline.models import TaskStatus
from voicememo.pipeline.orchestrator import MeetingPipeline, PipelineSettings
from voicememo.server.processing_queue import ProcessingQueue
from voicememo.server.task_store import TaskStore


class BlockingTranscoder(FakeTranscoder):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def convert(self, input_path, output_path):
        self.release.wait(5)
        return super().convert(input_path, output_path)


def make_queue(tmp_path, transcoder=None, speech_client=None, **settings):
    settings.setdefault("poll_interval", 0)
    store = TaskStore(str(tmp_path / "tasks"))

    def factory(task, task_store):
        return MeetingPipeline(
            task,
            task_store,
            FakeObjectStore(),
            speech_client or FakeSpeechClient(),
            transcoder or FakeTranscoder(),
            settings=PipelineSettings(**settings),
        )

    queue = ProcessingQueue(store, factory, max_workers=2)
    queue.start()
    return store, queue


def test_submit_runs_the_pipeline(tmp_path, mixed_task):
    store, queue = make_queue(tmp_path)
    store.save_task(mixed_task)

    assert queue.submit(mixed_task.id, "start")
    assert wait_for(lambda: not queue.is_task_running(mixed_task.id))
    queue.stop()

    task = store.load_task(mixed_task.id)
    assert task.status is TaskStatus.COMPLETED
    assert task.transcript == "Speaker 1: hello from mixed"


def test_one_action_per_task(tmp_path, mixed_task):
    transcoder = BlockingTranscoder()
    store, queue = make_queue(tmp_path, transcoder=transcoder)
    store.save_task(mixed_task)

    assert queue.submit(mixed_task.id, "start")
    assert not queue.submit(mixed_task.id, "retry")
    assert queue.get_queue_status()["running_tasks"] == [mixed_task.id]

    transcoder.release.set()
    assert wait_for(lambda: not queue.is_task_running(mixed_task.id))
    assert store.load_task(mixed_task.id).status is TaskStatus.COMPLETED
    queue.stop()


def test_run_from_and_check_actions(tmp_path, mixed_task):
    client = FakeSpeechClient()
    store, queue = make_queue(tmp_path, speech_client=client)
    mixed_task.mixed.remote_task_id = "remote-mixed"
    store.save_task(mixed_task)

    assert queue.submit(mixed_task.id, "run_from", step=TaskStatus.POLLING)
    assert wait_for(lambda: not queue.is_task_running(mixed_task.id))
    assert queue.submit(mixed_task.id, "check")
    assert wait_for(lambda: not queue.is_task_running(mixed_task.id))
    queue.stop()

    assert client.created == []
    assert len(client.status_calls) == 2
    assert store.load_task(mixed_task.id).status is TaskStatus.COMPLETED


def test_submit_rejections(tmp_path, mixed_task):
    store, queue = make_queue(tmp_path)

    assert not queue.submit("missing", "start")
    with pytest.raises(ValueError):
        queue.submit(mixed_task.id, "explode")

    queue.stop()
    store.save_task(mixed_task)
    assert not queue.submit(mixed_task.id, "start")


def test_stop_interrupts_polling(tmp_path, mixed_task):
    client = FakeSpeechClient(pending={"mixed": 1000})
    store, queue = make_queue(tmp_path, speech_client=client, poll_interval=30, max_poll_attempts=1000)
    store.save_task(mixed_task)

    assert queue.submit(mixed_task.id, "start")
    assert wait_for(lambda: len(client.status_calls) >= 1)
    assert queue.stop_task(mixed_task.id)
    assert wait_for(lambda: not queue.is_task_running(mixed_task.id))
    assert not queue.stop_task(mixed_task.id)
    queue.stop()

    task = store.load_task(mixed_task.id)
    assert task.status is TaskStatus.POLLING
    assert task.failed_step is None
