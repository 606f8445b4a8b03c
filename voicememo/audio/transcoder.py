"""
Audio transcoding to the upload format.

Recordings are converted to AAC in an m4a container before upload. The
conversion uses `pydub`, which delegates to `ffmpeg`. Output is written to a
temporary ``.part`` file and moved into place only on success, so a failed
conversion never leaves a partial output behind.
"""

import logging
import os

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError, CouldntEncodeError

from ..config import ConfigManager

logger = logging.getLogger(__name__)


class AudioTranscoder:
    """Converts arbitrary input audio to AAC/m4a at a fixed bitrate."""

    def __init__(self, bitrate: str = "48k", sample_rate: int = 48000):
        self.bitrate = bitrate
        self.sample_rate = sample_rate

    @classmethod
    def from_config(cls) -> "AudioTranscoder":
        return cls(
            bitrate=ConfigManager.get("TRANSCODE_BITRATE"),
            sample_rate=ConfigManager.get_int("TRANSCODE_SAMPLE_RATE"),
        )

    def convert(self, input_path: str, output_path: str) -> bool:
        """
        Convert ``input_path`` into ``output_path``.

        The input and output may be the same file; the input is fully decoded
        before the output is replaced.

        Returns:
            True if the output file was written, False otherwise
        """
        part_path = f"{output_path}.part"
        try:
            audio = AudioSegment.from_file(input_path)
            audio = audio.set_frame_rate(self.sample_rate)
            handle = audio.export(part_path, format="ipod", codec="aac", bitrate=self.bitrate)
            handle.close()
            os.replace(part_path, output_path)
        except (CouldntDecodeError, CouldntEncodeError, OSError) as e:
            logger.error(f"Transcode failed for {os.path.basename(input_path)}: {e}")
            _remove_quietly(part_path)
            return False

        logger.info(f"Transcoded {os.path.basename(input_path)} -> {os.path.basename(output_path)}")
        return True


def _remove_quietly(path: str) -> None:
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
