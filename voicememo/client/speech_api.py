"""
Client for the remote speech task API.

This module provides a thin interface for the pipeline stages to:
- Submit an uploaded audio file URL as an offline transcription task
- Check the task status and read its result payload
- Download result artifacts (transcription, summarization JSON)
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException

from ..config import ConfigManager
from ..errors import TransportError

logger = logging.getLogger(__name__)


class RemoteTaskStatus(Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


SUCCESS_STATES = {"SUCCESS", "COMPLETED"}
FAILED_STATES = {"FAILED"}


class SpeechTaskClient:
    """Client for the offline speech task endpoints."""

    TASKS_PATH = "/openapi/tingwu/v2/tasks"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        app_key: Optional[str] = None,
        language: str = "cn",
        timeout: int = 30,
    ):
        """
        Initialize the speech task client.

        Args:
            base_url: Base URL of the speech task API
            api_key: Bearer token sent with every API call
            app_key: Application key identifying the project on the backend
            language: Source language of submitted recordings
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.language = language
        self.timeout = timeout
        self.session = requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_config(cls) -> "SpeechTaskClient":
        return cls(
            base_url=ConfigManager.get("SPEECH_API_BASE_URL"),
            api_key=ConfigManager.get("SPEECH_API_KEY") or None,
            app_key=ConfigManager.get("SPEECH_APP_KEY") or None,
            language=ConfigManager.get("SPEECH_LANGUAGE"),
            timeout=ConfigManager.get_int("SPEECH_API_TIMEOUT"),
        )

    def create_task(self, file_url: str, summarize: bool = True) -> str:
        """
        Submit an audio file for offline transcription.

        Args:
            file_url: URL the backend can download the audio from
            summarize: Whether to request a summarization artifact

        Returns:
            Opaque task identifier

        Raises:
            TransportError: If the request fails or the response carries no task id
        """
        body = {
            "AppKey": self.app_key,
            "Input": {"SourceLanguage": self.language, "FileUrl": file_url},
            "Parameters": {
                "Transcription": {"DiarizationEnabled": True, "Diarization": {"SpeakerCount": 0}},
                "SummarizationEnabled": summarize,
            },
        }
        if summarize:
            body["Parameters"]["Summarization"] = {"Types": ["Paragraph"]}

        data = self._request("PUT", f"{self.base_url}{self.TASKS_PATH}", params={"type": "offline"}, json=body)
        task_id = (data.get("Data") or {}).get("TaskId") if isinstance(data, dict) else None
        if not task_id:
            raise TransportError(f"Failed to create task: response has no TaskId ({data})")
        return task_id

    def get_status(self, task_id: str) -> Tuple[RemoteTaskStatus, Optional[Dict[str, Any]]]:
        """
        Get the status of a speech task.

        Args:
            task_id: Identifier returned by :meth:`create_task`

        Returns:
            Tuple of (status, payload) where payload is the task's ``Data`` object

        Raises:
            TransportError: If the request fails
        """
        data = self._request("GET", f"{self.base_url}{self.TASKS_PATH}/{task_id}")
        payload = data.get("Data") if isinstance(data, dict) else None
        if not isinstance(payload, dict):
            return RemoteTaskStatus.RUNNING, None

        backend_status = str(payload.get("TaskStatus", "")).upper()
        if backend_status in SUCCESS_STATES:
            return RemoteTaskStatus.SUCCESS, payload
        if backend_status in FAILED_STATES:
            return RemoteTaskStatus.FAILED, payload
        return RemoteTaskStatus.RUNNING, payload

    def fetch_json(self, url: str) -> Any:
        """
        Download and decode a JSON result artifact.

        Raises:
            TransportError: If the download fails or the body is not JSON
        """
        return self._request("GET", url)

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except RequestException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise TransportError(f"{method} {url} failed: {e}", code=status_code) from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {url} returned invalid JSON: {e}") from e
