"""
Audio conversion for the transcription pipeline.
"""

from .transcoder import AudioTranscoder

__all__ = ["AudioTranscoder"]
