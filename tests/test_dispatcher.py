"""
Delivery dispatcher tests.
"""

from unittest.mock import Mock

import pytest

from eventwatch.compose.composer import DeliveryPlan
from eventwatch.database.models import User
from eventwatch.database.repository import InAppNotificationRepository, UserRepository
from eventwatch.dispatcher import ChannelTarget, DeliveryDispatcher
from eventwatch.ledger import DeduplicationLedger
from eventwatch.notifiers.base import ChannelKind, NotificationResult
from eventwatch.notifiers.in_app import InAppNotifier
from eventwatch.notifiers.speech import SpeechError
from eventwatch.rules.types import COMBINED_EVENT_KIND, AbnormalEvent, EventKind, Severity


def _event(symbol: str = "X", severity: Severity = Severity.HIGH) -> AbnormalEvent:
    return AbnormalEvent(
        symbol=symbol,
        kinds=[EventKind.PRICE_SPIKE],
        severity=severity,
        reasons=["escalation_price"],
        facts={"day_change_pct": 6.0},
    )


def _chat(name: str = "telegram", ok: bool = True, audio: bool = False) -> Mock:
    notifier = Mock()
    notifier.name = name
    notifier.kind = ChannelKind.CHAT
    notifier.supports_audio = audio
    notifier.send.return_value = NotificationResult(
        success=ok, channel=name, error=None if ok else "HTTP 502"
    )
    notifier.send_audio.return_value = NotificationResult(success=True, channel=name)
    return notifier


@pytest.fixture
def user(db) -> User:
    return UserRepository(db).create(User(email="d@example.com", telegram_chat_id="42"))


@pytest.fixture
def ledger(db, clock) -> DeduplicationLedger:
    return DeduplicationLedger(db, now_fn=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dispatcher(ledger, sleeps) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        ledger,
        min_pacing_seconds=1.0,
        max_pacing_seconds=8.0,
        pacing_seconds_per_char=0.02,
        sleep_fn=sleeps.append,
    )


class TestDeliveryDispatcher:
    """Test per-channel delivery."""

    def test_text_only_to_chat_and_inbox(self, db, dispatcher, user):
        chat = _chat()
        plan = DeliveryPlan.text_only("X is up 6% today.")

        result = dispatcher.dispatch(
            user.id,
            plan,
            [ChannelTarget(chat, "42"), ChannelTarget(InAppNotifier(db), str(user.id))],
            events=[_event()],
        )

        assert result.any_success is True
        assert set(result.per_channel) == {"telegram", "in_app"}
        chat.send.assert_called_once_with("42", "X is up 6% today.", severity=Severity.HIGH)
        assert result.failed_channels == []

    def test_partial_failure_is_mixed(self, db, dispatcher, user):
        """Chat failing while the inbox succeeds still counts as sent."""
        chat = _chat(ok=False)

        result = dispatcher.dispatch(
            user.id,
            DeliveryPlan.text_only("X is up."),
            [ChannelTarget(chat, "42"), ChannelTarget(InAppNotifier(db), str(user.id))],
            events=[_event()],
        )

        assert result.per_channel["telegram"].success is False
        assert result.per_channel["in_app"].success is True
        assert result.failed_channels == ["telegram"]
        assert result.any_success is True

    def test_total_failure(self, dispatcher, user):
        result = dispatcher.dispatch(
            user.id,
            DeliveryPlan.text_only("X is up."),
            [ChannelTarget(_chat(ok=False), "42"), ChannelTarget(_chat("discord", ok=False), "url")],
            events=[_event()],
        )

        assert result.any_success is False
        assert result.failed_channels == ["telegram", "discord"]

    def test_channel_exception_is_isolated(self, db, dispatcher, user):
        broken = _chat("discord")
        broken.send.side_effect = RuntimeError("boom")
        healthy = _chat("telegram")

        result = dispatcher.dispatch(
            user.id,
            DeliveryPlan.text_only("X is up."),
            [ChannelTarget(broken, "url"), ChannelTarget(healthy, "42")],
            events=[_event()],
        )

        assert result.per_channel["discord"].success is False
        assert result.per_channel["discord"].error == "boom"
        assert result.per_channel["telegram"].success is True
        healthy.send.assert_called_once()

    def test_segments_are_paced(self, dispatcher, sleeps, user):
        """Follow-ups wait in proportion to the previous message, bounded."""
        chat = _chat()
        teaser = "Short lead."
        medium = "m" * 200
        plan = DeliveryPlan.teaser_plus_segments(teaser, [medium, "Last one."])

        dispatcher.dispatch(user.id, plan, [ChannelTarget(chat, "42")])

        sent = [c.args[1] for c in chat.send.call_args_list]
        assert sent == [teaser, medium, "Last one."]
        assert sleeps == [1.0, pytest.approx(4.0)]

    def test_pacing_delay_bounds(self, dispatcher):
        assert dispatcher.pacing_delay("") == 1.0
        assert dispatcher.pacing_delay("x" * 100) == pytest.approx(2.0)
        assert dispatcher.pacing_delay("x" * 10_000) == 8.0

    def test_failed_segment_stops_followups_for_that_channel(self, dispatcher, user):
        flaky = _chat("telegram")
        flaky.send.side_effect = [
            NotificationResult(success=True, channel="telegram"),
            NotificationResult(success=False, channel="telegram", error="HTTP 500"),
        ]
        steady = _chat("discord")
        plan = DeliveryPlan.teaser_plus_segments("Lead.", ["One.", "Two."])

        result = dispatcher.dispatch(
            user.id, plan, [ChannelTarget(flaky, "42"), ChannelTarget(steady, "url")]
        )

        assert flaky.send.call_count == 2
        assert steady.send.call_count == 3
        assert result.per_channel["telegram"].success is True

    def test_inbox_gets_one_record_without_pacing(self, db, dispatcher, sleeps, user):
        plan = DeliveryPlan.teaser_plus_segments("Lead.", ["One.", "Two."])

        dispatcher.dispatch(user.id, plan, [ChannelTarget(InAppNotifier(db), str(user.id))])

        inbox = InAppNotificationRepository(db).list_for_user(user.id)
        assert len(inbox) == 1
        assert inbox[0].message == "Lead."
        assert inbox[0].segments == ["One.", "Two."]
        assert sleeps == []


class TestVoiceDelivery:
    """Test voice-mode segments."""

    @pytest.fixture
    def synthesizer(self):
        synthesizer = Mock()
        synthesizer.configured = True
        synthesizer.synthesize.side_effect = lambda text: f"audio:{text}".encode()
        return synthesizer

    @pytest.fixture
    def audio_store(self):
        store = Mock()
        store.save.side_effect = lambda user_id, audio: f"https://cdn.test/{user_id}/{len(audio)}.ogg"
        return store

    def test_voice_segments(self, db, ledger, synthesizer, audio_store, user):
        dispatcher = DeliveryDispatcher(
            ledger, synthesizer=synthesizer, audio_store=audio_store, sleep_fn=lambda s: None
        )
        voice_chat = _chat("telegram", audio=True)
        text_chat = _chat("discord")
        plan = DeliveryPlan.teaser_plus_segments("Lead.", ["One.", "Two."])

        result = dispatcher.dispatch(
            user.id,
            plan,
            [
                ChannelTarget(voice_chat, "42"),
                ChannelTarget(text_chat, "url"),
                ChannelTarget(InAppNotifier(db), str(user.id)),
            ],
            voice=True,
        )

        # Synthesized once per segment, shared by every channel
        assert synthesizer.synthesize.call_count == 2
        assert voice_chat.send.call_count == 1
        assert [c.args[1] for c in voice_chat.send_audio.call_args_list] == [b"audio:One.", b"audio:Two."]
        assert [c.args[1] for c in text_chat.send.call_args_list] == ["Lead.", "One.", "Two."]
        assert len(result.audio_urls) == 2
        inbox = InAppNotificationRepository(db).list_for_user(user.id)
        assert inbox[0].audio_urls == result.audio_urls

    def test_synthesis_failure_falls_back_to_text(self, ledger, synthesizer, user):
        synthesizer.synthesize.side_effect = SpeechError("quota")
        dispatcher = DeliveryDispatcher(ledger, synthesizer=synthesizer, sleep_fn=lambda s: None)
        voice_chat = _chat("telegram", audio=True)

        result = dispatcher.dispatch(
            user.id,
            DeliveryPlan.teaser_plus_segments("Lead.", ["One."]),
            [ChannelTarget(voice_chat, "42")],
            voice=True,
        )

        voice_chat.send_audio.assert_not_called()
        assert [c.args[1] for c in voice_chat.send.call_args_list] == ["Lead.", "One."]
        assert result.audio_urls == []

    def test_voice_note_failure_sends_text(self, ledger, synthesizer, user):
        dispatcher = DeliveryDispatcher(ledger, synthesizer=synthesizer, sleep_fn=lambda s: None)
        voice_chat = _chat("telegram", audio=True)
        voice_chat.send_audio.return_value = NotificationResult(
            success=False, channel="telegram", error="HTTP 400"
        )

        dispatcher.dispatch(
            user.id,
            DeliveryPlan.teaser_plus_segments("Lead.", ["One."]),
            [ChannelTarget(voice_chat, "42")],
            voice=True,
        )

        assert [c.args[1] for c in voice_chat.send.call_args_list] == ["Lead.", "One."]

    def test_text_mode_skips_synthesis(self, ledger, synthesizer, user):
        dispatcher = DeliveryDispatcher(ledger, synthesizer=synthesizer, sleep_fn=lambda s: None)

        dispatcher.dispatch(
            user.id,
            DeliveryPlan.teaser_plus_segments("Lead.", ["One."]),
            [ChannelTarget(_chat(audio=True), "42")],
            voice=False,
        )

        synthesizer.synthesize.assert_not_called()


class TestLedgerClaims:
    """Test claiming keys before sending."""

    def test_claim_then_second_claim_loses(self, dispatcher, ledger, user):
        events = [_event("X"), _event("Y")]

        first = dispatcher.claim(user.id, events)
        second = dispatcher.claim(user.id, events)

        assert set(first) == {"X", "Y"}
        assert second == {}
        assert ledger.was_sent_today(user.id, "X", COMBINED_EVENT_KIND) is True

    def test_release_frees_only_given_events(self, dispatcher, ledger, user):
        events = [_event("X"), _event("Y")]
        claims = dispatcher.claim(user.id, events)

        dispatcher.release(user.id, [events[0]], claims)

        assert ledger.was_sent_today(user.id, "X", COMBINED_EVENT_KIND) is False
        assert ledger.was_sent_today(user.id, "Y", COMBINED_EVENT_KIND) is True
        assert set(dispatcher.claim(user.id, events)) == {"X"}

    def test_release_ignores_unclaimed(self, dispatcher, ledger, user):
        dispatcher.claim(user.id, [_event("X")])

        dispatcher.release(user.id, [_event("X")], {})

        assert ledger.was_sent_today(user.id, "X", COMBINED_EVENT_KIND) is True
