"""
Client for the text generation service (OpenAI-compatible chat API).
"""

import logging

import requests

logger = logging.getLogger(__name__)


class NLGError(Exception):
    """Raised when the generation service cannot produce a reply."""

    pass


class NLGClient:
    """Sends a structured prompt and returns the raw JSON reply text."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 700,
        timeout: float = 20.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        """
        Request a JSON object reply.

        Raises:
            NLGError: If the service is unconfigured, unreachable, slow or
                returns an unexpected envelope
        """
        if not self.configured:
            raise NLGError("Text generation service not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except requests.exceptions.RequestException as e:
            raise NLGError(f"Generation request failed: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise NLGError(f"Unexpected generation response: {e}") from e

        if not content:
            raise NLGError("Empty generation response")
        return content
