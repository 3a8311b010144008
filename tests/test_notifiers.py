"""
Notifier tests.
Tests for Telegram, Discord and in-app delivery plus speech synthesis.
"""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

from eventwatch.config import AppConfig
from eventwatch.database.connection import Database
from eventwatch.database.models import User
from eventwatch.database.repository import InAppNotificationRepository, UserRepository
from eventwatch.notifiers.base import (
    ChannelKind,
    NotificationResult,
    NotifierFactory,
    retry_after_seconds,
)
from eventwatch.notifiers.discord import DiscordNotifier
from eventwatch.notifiers.in_app import InAppNotifier
from eventwatch.notifiers.speech import AudioStore, SpeechError, SpeechSynthesizer
from eventwatch.notifiers.telegram import TelegramNotifier
from eventwatch.rules.types import Severity


class TestNotificationResult:
    """Test NotificationResult model."""

    def test_success_result(self):
        result = NotificationResult(success=True, channel="telegram")
        assert result.success is True
        assert result.error is None

    def test_failure_result(self):
        result = NotificationResult(success=False, channel="discord", error="HTTP 400")
        assert result.success is False
        assert result.error == "HTTP 400"


class TestDiscordNotifier:
    """Test Discord webhook notifications."""

    @pytest.fixture
    def notifier(self):
        return DiscordNotifier(mention_on_high=True)

    def test_send_success(self, notifier, sample_discord_webhook_url):
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 204
            mock_post.return_value.ok = True

            result = notifier.send(sample_discord_webhook_url, "AAPL is up 6%.")

        assert result.success is True
        assert result.channel == "discord"
        payload = mock_post.call_args[1]["json"]
        assert payload["embeds"][0]["description"] == "AAPL is up 6%."
        assert "content" not in payload

    def test_mention_on_high(self, notifier, sample_discord_webhook_url):
        """High severity should @here; Medium should not."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True

            notifier.send(sample_discord_webhook_url, "Big move", severity=Severity.HIGH)
            high_payload = mock_post.call_args[1]["json"]
            notifier.send(sample_discord_webhook_url, "Small move", severity=Severity.MEDIUM)
            medium_payload = mock_post.call_args[1]["json"]

        assert high_payload["content"] == "@here"
        assert high_payload["embeds"][0]["color"] == DiscordNotifier.COLOR_HIGH
        assert "content" not in medium_payload

    def test_send_failure(self, notifier, sample_discord_webhook_url):
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 400
            mock_post.return_value.ok = False
            mock_post.return_value.text = "Bad Request"

            result = notifier.send(sample_discord_webhook_url, "x")

        assert result.success is False
        assert "400" in result.error

    def test_connection_error(self, notifier, sample_discord_webhook_url):
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("refused")):
            result = notifier.send(sample_discord_webhook_url, "x")

        assert result.success is False
        assert "Connection error" in result.error

    def test_rate_limit_retry(self, notifier, sample_discord_webhook_url):
        """Should retry once after Retry-After on 429."""
        limited = Mock(status_code=429, ok=False, headers={"Retry-After": "0.01"})
        accepted = Mock(status_code=204, ok=True)
        with patch("requests.post", side_effect=[limited, accepted]) as mock_post:
            with patch("time.sleep") as mock_sleep:
                result = notifier.send(sample_discord_webhook_url, "x")

        assert result.success is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(0.01)

    def test_missing_webhook(self, notifier):
        with patch("requests.post") as mock_post:
            result = notifier.send("", "x")

        assert result.success is False
        mock_post.assert_not_called()

    def test_no_audio(self, notifier):
        assert notifier.supports_audio is False
        assert notifier.send_audio("url", b"ogg").success is False


class TestTelegramNotifier:
    """Test Telegram Bot API delivery."""

    @pytest.fixture
    def notifier(self):
        return TelegramNotifier(bot_token="123:abc", api_url="https://tg.test")

    def test_send_message(self, notifier):
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True

            result = notifier.send("42", "AAPL is up 6%.")

        assert result.success is True
        args, kwargs = mock_post.call_args
        assert args[0] == "https://tg.test/bot123:abc/sendMessage"
        assert kwargs["json"] == {"chat_id": "42", "text": "AAPL is up 6%."}

    def test_send_voice(self, notifier):
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True

            result = notifier.send_audio("42", b"OggS...", caption="Part 1")

        assert result.success is True
        args, kwargs = mock_post.call_args
        assert args[0].endswith("/sendVoice")
        assert kwargs["data"] == {"chat_id": "42", "caption": "Part 1"}
        assert kwargs["files"]["voice"][1] == b"OggS..."

    def test_api_error(self, notifier):
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = False
            mock_post.return_value.status_code = 403
            mock_post.return_value.text = "Forbidden: bot was blocked by the user"

            result = notifier.send("42", "x")

        assert result.success is False
        assert "403" in result.error

    def test_unconfigured(self):
        with patch("requests.post") as mock_post:
            result = TelegramNotifier(bot_token="").send("42", "x")

        assert result.success is False
        mock_post.assert_not_called()

    def test_timeout_is_reported(self, notifier):
        with patch("requests.post", side_effect=requests.exceptions.Timeout("slow")):
            result = notifier.send("42", "x")

        assert result.success is False
        assert "slow" in result.error

    def test_rate_limit_uses_body_retry_after(self, notifier):
        """The JSON body's retry_after wins over the header."""
        limited = Mock(status_code=429, ok=False, headers={"Retry-After": "9"})
        limited.json.return_value = {"ok": False, "parameters": {"retry_after": 3}}
        accepted = Mock(status_code=200, ok=True)
        with patch("requests.post", side_effect=[limited, accepted]) as mock_post:
            with patch("time.sleep") as mock_sleep:
                result = notifier.send("42", "x")

        assert result.success is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(3.0)

    def test_rate_limit_with_http_date_header(self, notifier):
        limited = Mock(
            status_code=429, ok=False, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}
        )
        limited.json.side_effect = ValueError("no json")
        accepted = Mock(status_code=200, ok=True)
        with patch("requests.post", side_effect=[limited, accepted]):
            with patch("time.sleep") as mock_sleep:
                result = notifier.send("42", "x")

        assert result.success is True
        mock_sleep.assert_called_once_with(0.0)


class TestRetryAfter:
    """Test reading the wait time from a rate-limited response."""

    @staticmethod
    def _response(body=None, header=None) -> Mock:
        response = Mock(headers={"Retry-After": header} if header is not None else {})
        if body is None:
            response.json.side_effect = ValueError("no json")
        else:
            response.json.return_value = body
        return response

    def test_telegram_body(self):
        assert retry_after_seconds(self._response({"parameters": {"retry_after": 5}})) == 5.0

    def test_discord_body(self):
        assert retry_after_seconds(self._response({"retry_after": 0.25}, header="2")) == 0.25

    def test_numeric_header(self):
        assert retry_after_seconds(self._response(header="2.5")) == 2.5

    def test_unreadable_header_gives_default(self):
        assert retry_after_seconds(self._response(header="soon")) == 1.0
        assert retry_after_seconds(self._response()) == 1.0

    def test_delay_is_capped(self):
        assert retry_after_seconds(self._response({"parameters": {"retry_after": 3600}})) == 30.0


class TestInAppNotifier:
    """Test inbox storage."""

    @pytest.fixture
    def user(self, db: Database) -> User:
        return UserRepository(db).create(User(email="app@example.com"))

    def test_store_single_record(self, db: Database, user: User):
        notifier = InAppNotifier(db)

        result = notifier.store(
            str(user.id), "Teaser.", ["Segment one.", "Segment two."], ["file:///a.ogg"]
        )

        assert result.success is True
        inbox = InAppNotificationRepository(db).list_for_user(user.id)
        assert len(inbox) == 1
        assert inbox[0].message == "Teaser."
        assert inbox[0].segments == ["Segment one.", "Segment two."]
        assert inbox[0].audio_urls == ["file:///a.ogg"]

    def test_send_text(self, db: Database, user: User):
        assert InAppNotifier(db).send(str(user.id), "Hello").success is True

    def test_unknown_user_fails(self, db: Database):
        result = InAppNotifier(db).store("999", "Hello")

        assert result.success is False
        assert result.channel == "in_app"

    def test_kind(self, db: Database):
        assert InAppNotifier(db).kind == ChannelKind.INBOX


class TestNotifierFactory:
    def test_create_channels(self, db: Database):
        config = AppConfig()
        config.channels.telegram.bot_token = "123:abc"

        assert isinstance(NotifierFactory.create("telegram", config), TelegramNotifier)
        assert isinstance(NotifierFactory.create("discord", config), DiscordNotifier)
        assert isinstance(NotifierFactory.create("in_app", config, db), InAppNotifier)

    def test_unknown_channel(self):
        with pytest.raises(ValueError, match="Unknown notifier type"):
            NotifierFactory.create("pager", AppConfig())


class TestSpeech:
    """Test speech synthesis and audio storage."""

    def test_synthesize(self):
        synthesizer = SpeechSynthesizer(api_key="sk-test", base_url="https://tts.test/v1", voice="nova")
        with patch("requests.post") as mock_post:
            mock_post.return_value.content = b"OggS-audio"

            audio = synthesizer.synthesize("Apple is up.")

        assert audio == b"OggS-audio"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://tts.test/v1/audio/speech"
        assert kwargs["json"]["voice"] == "nova"
        assert kwargs["json"]["response_format"] == "opus"

    def test_synthesize_failure(self):
        synthesizer = SpeechSynthesizer(api_key="sk-test")
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(SpeechError):
                synthesizer.synthesize("x")

    def test_unconfigured(self):
        with pytest.raises(SpeechError):
            SpeechSynthesizer(api_key="").synthesize("x")

    def test_audio_store_public_url(self, tmp_path: Path):
        store = AudioStore(str(tmp_path), public_base_url="https://cdn.test/voice/")

        url = store.save(7, b"audio")

        assert url.startswith("https://cdn.test/voice/7/")
        files = list((tmp_path / "7").iterdir())
        assert len(files) == 1
        assert files[0].read_bytes() == b"audio"

    def test_audio_store_file_uri(self, tmp_path: Path):
        url = AudioStore(str(tmp_path)).save(7, b"audio")

        assert url.startswith("file://")
        assert url.endswith(".ogg")
