"""
Normalization of speech task transcription results.

The backend nests the transcription under several synonymous shapes. This
module unwraps them into speaker-attributed text lines:

    {"Result": {"Transcription": {...}}}
    {"Transcription": {...}}
    {"Paragraphs": [...]}
    {"Sentences": [...]}
    {"Transcript": "..."}

The first shape that matches wins, in that order. Unrecognized input yields
an empty string rather than an error.
"""

from typing import Any, Dict, List, Optional


def build_transcript_text(data: Any) -> str:
    """
    Build a flat transcript from a transcription result.

    Args:
        data: Decoded JSON value as returned by the speech task backend

    Returns:
        Newline-joined ``"<speaker>: <text>"`` (or bare ``<text>``) lines,
        or an empty string when no known shape is found
    """
    text = _build(data)
    return text if text is not None else ""


def _build(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None

    result = data.get("Result")
    if isinstance(result, dict) and isinstance(result.get("Transcription"), dict):
        return _build(result["Transcription"])

    transcription = data.get("Transcription")
    if isinstance(transcription, dict):
        return _build(transcription)

    paragraphs = data.get("Paragraphs")
    if isinstance(paragraphs, list):
        return _join_lines(paragraphs)

    sentences = data.get("Sentences")
    if isinstance(sentences, list):
        return _join_lines(sentences)

    transcript = data.get("Transcript")
    if isinstance(transcript, str):
        return transcript

    return None


def _join_lines(items: List[Any]) -> str:
    lines = []
    for item in items:
        if not isinstance(item, dict):
            continue
        line = _extract_line(item)
        if line is not None:
            lines.append(line)
    return "\n".join(lines)


def _extract_line(item: Dict[str, Any]) -> Optional[str]:
    text = _extract_text(item)
    if not text:
        return None
    speaker = _extract_speaker(item)
    if speaker is not None:
        return f"{speaker}: {text}"
    return text


def _extract_text(item: Dict[str, Any]) -> str:
    for key in ("Text", "text"):
        value = item.get(key)
        if isinstance(value, str) and value:
            return value

    words = item.get("Words")
    if isinstance(words, list):
        fragments = []
        for word in words:
            if not isinstance(word, dict):
                continue
            fragment = word.get("Text")
            if not isinstance(fragment, str):
                fragment = word.get("text")
            if isinstance(fragment, str):
                fragments.append(fragment)
        return "".join(fragments)

    return ""


def _extract_speaker(item: Dict[str, Any]) -> Optional[str]:
    for key in ("SpeakerName", "Speaker"):
        value = item.get(key)
        if isinstance(value, str) and value:
            return value

    speaker_id = item.get("SpeakerId")
    if speaker_id is None:
        speaker_id = item.get("SpeakerID")
    if speaker_id is not None:
        return f"Speaker {speaker_id}"

    return None
