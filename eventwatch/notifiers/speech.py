"""
Speech synthesis for voice-mode users and storage of the resulting audio.
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class SpeechError(Exception):
    """Raised when a segment cannot be synthesized."""

    pass


class SpeechSynthesizer:
    """Client for an OpenAI-compatible ``/audio/speech`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "tts-1",
        voice: str = "alloy",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.voice = voice
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def synthesize(self, text: str) -> bytes:
        """
        Convert text to OGG/Opus audio.

        Raises:
            SpeechError: If the service is unconfigured or the request fails
        """
        if not self.configured:
            raise SpeechError("Speech service not configured")

        try:
            response = requests.post(
                f"{self.base_url}/audio/speech",
                json={
                    "model": self.model,
                    "voice": self.voice,
                    "input": text,
                    "response_format": "opus",
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise SpeechError(f"Speech request failed: {e}") from e

        if not response.content:
            raise SpeechError("Empty audio response")
        return response.content


class AudioStore:
    """Saves synthesized audio to disk and hands out URLs for the inbox."""

    def __init__(self, storage_dir: str, public_base_url: Optional[str] = None):
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def save(self, user_id: int, audio: bytes) -> str:
        """
        Write one audio file.

        Returns:
            Public URL when a base URL is configured, otherwise a file URI

        Raises:
            OSError: If the file cannot be written
        """
        user_dir = self.storage_dir / str(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{datetime.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}.ogg"
        path = user_dir / filename
        path.write_bytes(audio)
        logger.debug(f"Stored {len(audio)} bytes of audio at {path}")

        if self.public_base_url:
            return f"{self.public_base_url}/{user_id}/{filename}"
        return path.resolve().as_uri()
