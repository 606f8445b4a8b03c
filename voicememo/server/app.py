"""
Flask API server for meeting transcription tasks.

This server provides endpoints for:
- Importing a mixed recording or a pair of speaker recordings as a task
- Starting, retrying, restarting, re-checking and stopping a task's pipeline
- Reading task state, transcripts and summaries

Pipeline actions run in the background on a ProcessingQueue.
"""

import atexit
import logging
import os
import tempfile
from datetime import datetime
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.utils import secure_filename

from ..config import ConfigManager
from ..pipeline.models import SPEAKERS, Task, TaskMode, TaskStatus, track_name
from .processing_queue import ProcessingQueue
from .task_store import TaskStore

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"wav", "mp3", "mp4", "m4a", "flac", "aac", "ogg", "wma", "caf"}

# Steps a caller may explicitly resume from
RESUMABLE_STEPS = {TaskStatus.UPLOADING, TaskStatus.CREATED, TaskStatus.POLLING}


def allowed_file(filename: str) -> bool:
    """Check if the uploaded file has an allowed extension."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def create_app(store: Optional[TaskStore] = None, queue: Optional[ProcessingQueue] = None) -> Flask:
    """
    Create the Flask application.

    Args:
        store: Task store; defaults to one rooted at ``TASKS_DIR``
        queue: Processing queue; defaults to a started queue with ``MAX_WORKERS`` workers
    """
    if store is None:
        store = TaskStore(ConfigManager.get("TASKS_DIR"))
    if queue is None:
        queue = ProcessingQueue(store, max_workers=ConfigManager.get_int("MAX_WORKERS"))
        queue.start()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 500 * 1024 * 1024  # 500MB max file size
    CORS(app)

    def task_response(task: Task):
        data = task.to_dict()
        data["is_processing"] = queue.is_task_running(task.id)
        return data

    def submit_action(task_id: str, action: str, **kwargs):
        if not queue.submit(task_id, action, **kwargs):
            return jsonify({"error": "Task is already processing"}), 409
        return jsonify({"task_id": task_id, "action": action, "message": "Action submitted"}), 202

    def import_upload(task: Task, file, speaker: Optional[int]) -> str:
        """Save an uploaded recording into the task directory and return its path."""
        # Extension already checked by allowed_file; secure_filename turns "会议.m4a" into "m4a"
        extension = file.filename.rsplit(".", 1)[1].lower()
        with tempfile.NamedTemporaryFile(delete=False, suffix=f".{extension}") as tmp_file:
            file.save(tmp_file.name)
            temp_file_path = tmp_file.name

        try:
            if os.path.getsize(temp_file_path) == 0:
                raise ValueError(f"Empty file not allowed: {file.filename}")
            return store.import_audio(task.id, temp_file_path, f"{track_name(speaker)}.{extension}")
        finally:
            if os.path.exists(temp_file_path):
                os.unlink(temp_file_path)

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint."""
        queue_status = queue.get_queue_status()
        return jsonify(
            {
                "status": "healthy",
                "timestamp": datetime.now().isoformat(),
                "queue_running": queue_status["is_running"],
                "running_tasks": len(queue_status["running_tasks"]),
            }
        )

    @app.route("/tasks", methods=["POST"])
    def create_task():
        """
        Import a recording as a new task.

        Expected form data:
        - file: Mixed recording, or
        - speaker1 and speaker2: One recording per speaker
        - title: Optional display title
        - recording_id: Optional recording identifier
        - autostart: "false" to only create the task

        Returns:
        - The stored task, with status ``recorded``
        """
        if "file" in request.files:
            uploads = {None: request.files["file"]}
            mode = TaskMode.MIXED
        elif "speaker1" in request.files and "speaker2" in request.files:
            uploads = {spk: request.files[f"speaker{spk}"] for spk in SPEAKERS}
            mode = TaskMode.SEPARATED
        else:
            return jsonify({"error": "Provide 'file' or both 'speaker1' and 'speaker2'"}), 400

        for file in uploads.values():
            if file.filename == "":
                return jsonify({"error": "No file selected"}), 400
            if not allowed_file(file.filename):
                allowed_types = ", ".join(sorted(ALLOWED_EXTENSIONS))
                return jsonify({"error": f"File type not allowed. Allowed types: {allowed_types}"}), 400
            if not secure_filename(file.filename):
                return jsonify({"error": "Invalid filename"}), 400

        recording_id = request.form.get("recording_id") or datetime.now().strftime("%Y%m%d-%H%M%S")
        title = request.form.get("title", "")

        if mode is TaskMode.MIXED:
            task = Task.for_mixed(recording_id, "", title=title)
        else:
            task = Task.for_separated(recording_id, "", "", title=title)

        try:
            for speaker, file in uploads.items():
                path = import_upload(task, file, speaker)
                task.track(speaker).audio_path = path
                if speaker is None:
                    task.local_file_path = path
        except ValueError as e:
            store.delete_task(task.id)
            return jsonify({"error": str(e)}), 400

        store.save_task(task)
        logger.info(f"Created {mode.value} task {task.id} for recording {recording_id}")

        if ConfigManager.get_bool("AUTOSTART", request.form.get("autostart")):
            queue.submit(task.id, "start")

        return jsonify(task_response(task)), 201

    @app.route("/tasks", methods=["GET"])
    def list_tasks():
        """
        List tasks.

        Query parameters:
        - status: Filter by overall status
        - limit: Limit number of results (default: 100)
        - offset: Offset for pagination (default: 0)
        """
        try:
            status_filter = TaskStatus(request.args["status"]) if request.args.get("status") else None
            limit = int(request.args.get("limit", 100))
            offset = int(request.args.get("offset", 0))
        except ValueError as e:
            return jsonify({"error": f"Invalid query parameter: {e}"}), 400

        tasks = store.load_tasks(status_filter=status_filter, limit=limit + offset)
        total_tasks = len(tasks)
        tasks = tasks[offset : offset + limit]

        return jsonify(
            {"tasks": [task_response(t) for t in tasks], "total": total_tasks, "limit": limit, "offset": offset}
        )

    @app.route("/tasks/<task_id>", methods=["GET"])
    def get_task(task_id: str):
        task = store.load_task(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404
        return jsonify(task_response(task))

    @app.route("/tasks/<task_id>/start", methods=["POST"])
    def start_task(task_id: str):
        """Start or resume a task; an optional JSON ``step`` resumes from that step."""
        if not store.task_exists(task_id):
            return jsonify({"error": "Task not found"}), 404

        body = request.get_json(silent=True) or {}
        step = body.get("step")
        if step is None:
            return submit_action(task_id, "start")

        try:
            step = TaskStatus(step)
        except ValueError:
            step = None
        if step not in RESUMABLE_STEPS:
            allowed = ", ".join(sorted(s.value for s in RESUMABLE_STEPS))
            return jsonify({"error": f"Invalid step. Allowed steps: {allowed}"}), 400
        return submit_action(task_id, "run_from", step=step)

    @app.route("/tasks/<task_id>/retry", methods=["POST"])
    def retry_task(task_id: str):
        """Retry a failed task; an optional JSON ``speaker`` retries one speaker track."""
        task = store.load_task(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404

        body = request.get_json(silent=True) or {}
        speaker = body.get("speaker")
        if speaker is not None:
            if task.mode is not TaskMode.SEPARATED:
                return jsonify({"error": "Speaker retry requires a separated task"}), 400
            if speaker not in SPEAKERS:
                return jsonify({"error": f"Invalid speaker: {speaker}"}), 400
        return submit_action(task_id, "retry", speaker=speaker)

    @app.route("/tasks/<task_id>/restart", methods=["POST"])
    def restart_task(task_id: str):
        if not store.task_exists(task_id):
            return jsonify({"error": "Task not found"}), 404
        return submit_action(task_id, "restart")

    @app.route("/tasks/<task_id>/check", methods=["POST"])
    def check_task(task_id: str):
        """Poll the remote task again."""
        if not store.task_exists(task_id):
            return jsonify({"error": "Task not found"}), 404
        return submit_action(task_id, "check")

    @app.route("/tasks/<task_id>/stop", methods=["POST"])
    def stop_task(task_id: str):
        if not store.task_exists(task_id):
            return jsonify({"error": "Task not found"}), 404
        if not queue.stop_task(task_id):
            return jsonify({"error": "Task is not processing"}), 409
        return jsonify({"message": "Stop requested"})

    @app.route("/tasks/<task_id>", methods=["DELETE"])
    def delete_task(task_id: str):
        """Delete a task and its files; a processing task must be stopped first."""
        if not store.task_exists(task_id):
            return jsonify({"error": "Task not found"}), 404

        if queue.is_task_running(task_id):
            return jsonify({"error": "Task is processing; stop it first"}), 409

        if store.delete_task(task_id):
            return jsonify({"message": "Task deleted successfully"})
        return jsonify({"error": "Failed to delete task"}), 500

    @app.route("/queue/status", methods=["GET"])
    def get_queue_status():
        """Get detailed queue status information."""
        return jsonify(queue.get_queue_status())

    return app


def main():
    """Run the API server."""
    log_level = getattr(logging, str(ConfigManager.get("LOG_LEVEL")).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("werkzeug").setLevel(log_level)

    for key in ("TASKS_DIR", "STORAGE_BACKEND", "SPEECH_API_BASE_URL", "POLL_MAX_ATTEMPTS", "POLL_INTERVAL"):
        value, source = ConfigManager.get_display_value(key)
        logger.info(f"{key}={value} ({source})")

    store = TaskStore(ConfigManager.get("TASKS_DIR"))
    queue = ProcessingQueue(store, max_workers=ConfigManager.get_int("MAX_WORKERS"))
    queue.start()

    # Ensure cleanup on shutdown
    atexit.register(queue.stop)

    app = create_app(store, queue)
    app.run(host=ConfigManager.get("SERVER_HOST"), port=ConfigManager.get_int("SERVER_PORT"))


if __name__ == "__main__":
    main()
