"""
Deduplicator

Suppresses repeated deliveries of the same logical event. The backend often
publishes an event on its per-session topic and again on the broadcast
topic; each logical event must reach the transcript exactly once.

Two mechanisms:
- Fingerprints ``(kind, subtype, timestamp bucket, content hash)`` for every
  message. A fingerprint also matches its neighbouring buckets so two
  deliveries straddling a bucket boundary are still recognized.
- Identity claims for lifecycle markers: a start or a completion is honored
  once per tool id, however many times it is redelivered.

Usage:
    dedup = Deduplicator(window_ms=100)
    if not dedup.is_duplicate(message):
        transcript.append(message)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass

from subagent_aggregator.core.domain.messages import NormalizedMessage
from subagent_aggregator.core.domain.session import LifecycleSignal

_CLAIMED_SIGNALS = frozenset({LifecycleSignal.STARTED, LifecycleSignal.COMPLETED})


@dataclass(frozen=True)
class Fingerprint:
    """Derived deduplication key for a normalized message."""

    kind: str
    subtype: str | None
    bucket: int
    content_hash: str

    def shifted(self, offset: int) -> Fingerprint:
        return Fingerprint(self.kind, self.subtype, self.bucket + offset, self.content_hash)


class Deduplicator:
    """
    Per-session record of fingerprints already applied.

    ``is_duplicate`` is a check-and-set with no suspension point, so within a
    single consumption loop it is atomic with respect to later deliveries.

    Attributes:
        _seen: Fingerprints recorded so far
        _claims: ``(signal, tool_id)`` lifecycle markers already honored
        _stats: Accepted/suppressed counters for monitoring
    """

    def __init__(self, window_ms: int = 100):
        """
        Initialize Deduplicator.

        Args:
            window_ms: Width of a timestamp bucket in milliseconds.
        """
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._window_ms = window_ms
        self._seen: set[Fingerprint] = set()
        self._claims: set[tuple[LifecycleSignal, str]] = set()
        self._stats = {"accepted": 0, "suppressed": 0}

    def fingerprint(self, message: NormalizedMessage) -> Fingerprint:
        """
        Compute the fingerprint of a message.

        The content hash covers text and structured content, serialized with
        sorted keys so key order does not matter. Provenance is excluded.
        Content JSON cannot encode (mixed-type keys, cycles) is hashed via
        ``repr`` instead.
        """
        body = {"text": message.text, "structured": message.structured_content}
        try:
            content = json.dumps(body, sort_keys=True, default=str)
        except (TypeError, ValueError):
            content = repr(body)
        millis = int(message.timestamp.timestamp() * 1000)
        return Fingerprint(
            kind=message.kind.value,
            subtype=message.subtype,
            bucket=millis // self._window_ms,
            content_hash=hashlib.sha256(content.encode()).hexdigest()[:16],
        )

    def is_duplicate(self, message: NormalizedMessage) -> bool:
        """
        Check whether a message was already seen, recording it if not.

        Args:
            message: Normalized message about to be appended

        Returns:
            True if an equivalent message was already recorded
        """
        fingerprint = self.fingerprint(message)
        if any(fingerprint.shifted(offset) in self._seen for offset in (-1, 0, 1)):
            self._stats["suppressed"] += 1
            return True
        self._seen.add(fingerprint)
        self._stats["accepted"] += 1
        return False

    def claim_lifecycle(self, signal: LifecycleSignal, tool_id: str) -> bool:
        """
        Claim a lifecycle marker for a tool id.

        Only starts and completions are claimed; other signals always succeed.

        Returns:
            True the first time a marker is claimed, False on redelivery
        """
        if signal not in _CLAIMED_SIGNALS:
            return True
        key = (signal, tool_id)
        if key in self._claims:
            self._stats["suppressed"] += 1
            return False
        self._claims.add(key)
        return True

    def clear(self) -> None:
        """Forget every fingerprint and claim."""
        self._seen.clear()
        self._claims.clear()

    @property
    def stats(self) -> dict[str, int]:
        """Accepted/suppressed counters."""
        return dict(self._stats)

    def __len__(self) -> int:
        return len(self._seen)
