"""
Delivers composed plans to a user's channels.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from eventwatch.compose.composer import DeliveryPlan
from eventwatch.ledger import DeduplicationLedger
from eventwatch.notifiers.base import ChannelKind, NotificationResult, Notifier
from eventwatch.notifiers.speech import AudioStore, SpeechError, SpeechSynthesizer
from eventwatch.rules.types import AbnormalEvent, Severity

logger = logging.getLogger(__name__)


@dataclass
class ChannelTarget:
    """A channel adapter paired with the user's address on it."""

    notifier: Notifier
    destination: str

    @property
    def name(self) -> str:
        return self.notifier.name


@dataclass
class DispatchResult:
    """Per-channel outcome of one delivery."""

    per_channel: dict[str, NotificationResult] = field(default_factory=dict)
    audio_urls: list[str] = field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return any(result.success for result in self.per_channel.values())

    @property
    def failed_channels(self) -> list[str]:
        return [name for name, result in self.per_channel.items() if not result.success]


@dataclass
class _Audio:
    clip: bytes
    url: Optional[str] = None


class DeliveryDispatcher:
    """
    Sends a DeliveryPlan to every target channel.

    Channels are attempted independently and never retried. Chat channels
    get the lead message right away and each follow-up segment after a
    pause proportional to the previous message's length. The inbox gets a
    single record. Ledger keys are claimed before sending and released
    again when every channel failed.
    """

    def __init__(
        self,
        ledger: DeduplicationLedger,
        synthesizer: Optional[SpeechSynthesizer] = None,
        audio_store: Optional[AudioStore] = None,
        min_pacing_seconds: float = 1.0,
        max_pacing_seconds: float = 8.0,
        pacing_seconds_per_char: float = 0.02,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.synthesizer = synthesizer
        self.audio_store = audio_store
        self.min_pacing_seconds = min_pacing_seconds
        self.max_pacing_seconds = max_pacing_seconds
        self.pacing_seconds_per_char = pacing_seconds_per_char
        self.sleep_fn = sleep_fn

    def claim(self, user_id: int, events: list[AbnormalEvent]) -> dict[str, datetime]:
        """
        Claim the ledger key of every event before anything is sent.

        Returns:
            Claim time by symbol for the events this caller now owns; events
            someone else already claimed are left out
        """
        claims = {}
        for event in events:
            claimed_at = self.ledger.claim(user_id, event.symbol, event.dedup_kind)
            if claimed_at is not None:
                claims[event.symbol] = claimed_at
        return claims

    def release(
        self, user_id: int, events: list[AbnormalEvent], claims: dict[str, datetime]
    ) -> None:
        """Release claims for events no channel delivered."""
        for event in events:
            claimed_at = claims.get(event.symbol)
            if claimed_at is not None:
                self.ledger.release(user_id, event.symbol, event.dedup_kind, claimed_at)

    def pacing_delay(self, previous: str) -> float:
        delay = len(previous) * self.pacing_seconds_per_char
        return max(self.min_pacing_seconds, min(self.max_pacing_seconds, delay))

    def dispatch(
        self,
        user_id: int,
        plan: DeliveryPlan,
        channels: list[ChannelTarget],
        events: Optional[list[AbnormalEvent]] = None,
        voice: bool = False,
    ) -> DispatchResult:
        """
        Deliver one plan.

        Args:
            user_id: Recipient
            plan: Composed messages
            channels: Enabled channels with their destinations
            events: Events the plan reports, used for severity
            voice: Synthesize long-form segments for audio-capable channels

        Returns:
            DispatchResult with one entry per channel
        """
        events = events or []
        result = DispatchResult()
        severity = max((e.severity for e in events), key=lambda s: s.value, default=None)

        audio = self._synthesize(user_id, plan) if voice and plan.segments else []
        result.audio_urls = [a.url for a in audio if a.url]

        inbox = [c for c in channels if c.notifier.kind == ChannelKind.INBOX]
        chats = [c for c in channels if c.notifier.kind == ChannelKind.CHAT]

        for target in inbox:
            result.per_channel[target.name] = self._store(target, plan, result.audio_urls)

        self._send_chats(chats, plan, severity, audio, result)

        for name in result.failed_channels:
            logger.warning(
                f"Delivery to {name} failed for user {user_id}: {result.per_channel[name].error}"
            )

        if channels and not result.any_success:
            logger.warning(f"All channels failed for user {user_id}")

        return result

    def _store(
        self, target: ChannelTarget, plan: DeliveryPlan, audio_urls: list[str]
    ) -> NotificationResult:
        store = getattr(target.notifier, "store", None)
        try:
            if store is None:
                return target.notifier.send(target.destination, "\n\n".join(plan.messages))
            return store(target.destination, plan.lead, plan.segments, audio_urls)
        except Exception as e:
            return NotificationResult(success=False, channel=target.name, error=str(e))

    def _send_chats(
        self,
        chats: list[ChannelTarget],
        plan: DeliveryPlan,
        severity: Optional[Severity],
        audio: list[_Audio],
        result: DispatchResult,
    ) -> None:
        """Send the lead to every chat, then each segment after a pause."""
        live = []
        for target in chats:
            outcome = self._safe_send(target, plan.lead, severity)
            result.per_channel[target.name] = outcome
            if outcome.success:
                live.append(target)

        previous = plan.lead
        for index, segment in enumerate(plan.segments):
            if not live:
                break
            self.sleep_fn(self.pacing_delay(previous))
            clip = audio[index].clip if index < len(audio) else None
            for target in list(live):
                outcome = self._send_segment(target, segment, clip, severity)
                if not outcome.success:
                    logger.warning(
                        f"Segment {index + 1} to {target.name} failed, "
                        f"stopping follow-ups: {outcome.error}"
                    )
                    live.remove(target)
            previous = segment

    def _send_segment(
        self,
        target: ChannelTarget,
        segment: str,
        clip: Optional[bytes],
        severity: Optional[Severity],
    ) -> NotificationResult:
        if clip is not None and target.notifier.supports_audio:
            try:
                outcome = target.notifier.send_audio(target.destination, clip)
            except Exception as e:
                outcome = NotificationResult(success=False, channel=target.name, error=str(e))
            if outcome.success:
                return outcome
            logger.info(f"Voice note to {target.name} failed, sending text: {outcome.error}")
        return self._safe_send(target, segment, severity)

    def _safe_send(
        self, target: ChannelTarget, text: str, severity: Optional[Severity]
    ) -> NotificationResult:
        try:
            return target.notifier.send(target.destination, text, severity=severity)
        except Exception as e:
            return NotificationResult(success=False, channel=target.name, error=str(e))

    def _synthesize(self, user_id: int, plan: DeliveryPlan) -> list[_Audio]:
        """Synthesize every segment once. Any failure means text only."""
        if self.synthesizer is None or not self.synthesizer.configured:
            return []

        audio = []
        try:
            for segment in plan.segments:
                clip = self.synthesizer.synthesize(segment)
                url = self.audio_store.save(user_id, clip) if self.audio_store else None
                audio.append(_Audio(clip=clip, url=url))
        except (SpeechError, OSError) as e:
            logger.warning(f"Speech synthesis failed for user {user_id}, sending text: {e}")
            return []
        return audio
