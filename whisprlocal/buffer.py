"""
Bounded transcript history

Keeps the most recent finalized transcripts (newest first) and provides
per-client read markers for IPC consumers.
"""

import json
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 10


def normalize_phrase(text: str) -> str:
    """Normalize text for comparison: lowercase, alphanumeric only"""
    return re.sub(r'[^a-z0-9]', '', text.lower().strip())


def _now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


@dataclass(frozen=True)
class TranscriptionEntry:
    """A finalized transcript with timestamp"""
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"ts": self.timestamp.isoformat(timespec='milliseconds'), "text": self.text}

    def to_jsonl(self) -> str:
        """Convert to JSONL format with ISO 8601 timestamp"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_text(cls, text: str, timestamp: Optional[datetime] = None) -> "TranscriptionEntry":
        """Create entry with given or current timestamp"""
        return cls(text=text, timestamp=timestamp or _now())


class TranscriptHistory:
    """
    Thread-safe most-recent-first transcript history

    Features:
    - Fixed capacity, oldest entries evicted first
    - Per-client read markers
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE):
        """
        Initialize history

        Args:
            capacity: Maximum number of entries retained
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: Deque[TranscriptionEntry] = deque(maxlen=capacity)
        self._read_markers: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, text: str, timestamp: Optional[datetime] = None) -> Optional[TranscriptionEntry]:
        """
        Insert a transcript at the head of the history

        Returns:
            The new entry, or None for blank text
        """
        if not text or not text.strip():
            return None

        entry = TranscriptionEntry.from_text(text.strip(), timestamp)
        with self._lock:
            self._entries.appendleft(entry)

        logger.debug(f"Added transcript: {len(entry.text)} chars at {entry.timestamp}")
        return entry

    def entries(self) -> Tuple[TranscriptionEntry, ...]:
        """Snapshot of the history, most recent first"""
        with self._lock:
            return tuple(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def set_marker(self, uid: str) -> None:
        """
        Set read marker for a client to current time

        Args:
            uid: Unique client identifier
        """
        now = _now()
        with self._lock:
            self._read_markers[uid] = now
        logger.debug(f"Set marker for '{uid}' to {now}")

    def get_since_marker(self, uid: str) -> str:
        """
        Get entries newer than the client's read marker as JSONL (oldest first)

        Updates the read marker to the newest returned entry's timestamp.

        Args:
            uid: Unique client identifier

        Returns:
            JSONL string of entries, or empty string if none
        """
        with self._lock:
            marker = self._read_markers.get(uid)

            if marker is None:
                self._read_markers[uid] = _now()
                return ""

            newer = [e for e in reversed(self._entries) if e.timestamp > marker]
            if newer:
                self._read_markers[uid] = max(e.timestamp for e in newer)
                logger.debug(f"Returning {len(newer)} transcripts for '{uid}'")

        return "\n".join(e.to_jsonl() for e in newer)

    def get_stats(self) -> dict:
        """Get history statistics"""
        with self._lock:
            return {
                "entry_count": len(self._entries),
                "capacity": self.capacity,
                "marker_count": len(self._read_markers),
            }


def build_discard_set(phrases: Iterable[str]) -> frozenset:
    """Pre-normalize phrases for fast matching"""
    return frozenset(p for p in (normalize_phrase(phrase) for phrase in phrases) if p)
