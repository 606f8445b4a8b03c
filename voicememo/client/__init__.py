"""
Transport clients for object storage and the remote speech task API.
"""

from .object_store import LocalObjectStore, S3ObjectStore, build_object_store
from .speech_api import RemoteTaskStatus, SpeechTaskClient

__all__ = ["LocalObjectStore", "S3ObjectStore", "build_object_store", "RemoteTaskStatus", "SpeechTaskClient"]
