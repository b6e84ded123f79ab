"""
Append-Only, Tamper-Evident Status History (Hash-Chained).

Every successful stage transition is recorded as a ``StatusHistoryEntry``.
Entries are linked via a SHA-256 hash chain: if any entry is modified
after the fact, ``verify_chain()`` reports where the chain breaks.

There are no update or delete operations.  Reads return copies.

The "when did this patient reach stage X" view is derived, not stored:
``timeline_for()`` picks the most recent entry per distinct ``to_stage``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime
from typing import Optional

from intakeflow.models import Actor, Stage, StatusHistoryEntry


logger = logging.getLogger(__name__)


def canonical_bytes(entry: StatusHistoryEntry) -> bytes:
    """Deterministic byte representation of an entry for hashing."""
    data = {
        "entry_id": entry.entry_id,
        "event_id": entry.event_id,
        "patient_hn": entry.patient_hn,
        "from_stage": entry.from_stage.value,
        "to_stage": entry.to_stage.value,
        "actor_account": entry.actor_account,
        "actor_display_name": entry.actor_display_name,
        "actor_role": entry.actor_role.value,
        "note": entry.note,
        "timestamp": entry.timestamp.isoformat(),
        "previous_hash": entry.previous_hash,
    }
    return json.dumps(data, sort_keys=True, ensure_ascii=False).encode("utf-8")


def compute_hash(entry: StatusHistoryEntry) -> str:
    return hashlib.sha256(canonical_bytes(entry)).hexdigest()


class StatusHistoryLog:
    """Append-only audit trail of stage transitions.

    * **Append-only writes** -- once appended an entry cannot be changed
      through this interface.
    * **Hash chain verification** -- each entry stores the hash of its
      predecessor; ``verify_chain()`` walks the whole log.
    * **Per-patient views** -- ``entries_for()``, ``timeline_for()`` and
      ``stage_reached_at()`` are always scoped by HN.
    """

    def __init__(self) -> None:
        self._entries: list[StatusHistoryEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes
        self._lock = threading.Lock()

    def append(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        """Append an entry, linking it to the previous one.

        Returns:
            A copy of the stored entry with ``previous_hash`` populated.
        """
        with self._lock:
            stored = entry.model_copy(
                update={"previous_hash": self._hashes[-1] if self._hashes else ""},
                deep=True,
            )
            self._entries.append(stored)
            self._hashes.append(compute_hash(stored))
        return stored.model_copy(deep=True)

    def record_transition(
        self,
        hn: str,
        from_stage: Stage,
        to_stage: Stage,
        actor: Actor,
        note: str = "",
        event_id: str = "",
        timestamp: Optional[datetime] = None,
    ) -> StatusHistoryEntry:
        """Build and append an entry for one transition."""
        fields = {
            "event_id": event_id,
            "patient_hn": hn,
            "from_stage": from_stage,
            "to_stage": to_stage,
            "actor_account": actor.account,
            "actor_display_name": actor.display_name,
            "actor_role": actor.role,
            "note": note,
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        entry = self.append(StatusHistoryEntry(**fields))
        logger.info(
            f"Logged {hn}: {from_stage.value} -> {to_stage.value} by {actor.account}"
        )
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None when the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)
        for i, entry in enumerate(entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != compute_hash(entries[i - 1]):
                return (False, i)
            if hashes[i] != compute_hash(entry):
                return (False, i)
        return (True, None)

    def entries_for(self, hn: str) -> list[StatusHistoryEntry]:
        """All entries for a patient, oldest first."""
        entries = [e for e in self._entries if e.patient_hn == hn]
        entries.sort(key=lambda e: e.timestamp)
        return [e.model_copy(deep=True) for e in entries]

    def timeline_for(self, hn: str) -> dict[Stage, StatusHistoryEntry]:
        """Most recent transition into each stage the patient has reached."""
        timeline: dict[Stage, StatusHistoryEntry] = {}
        for entry in self.entries_for(hn):
            timeline[entry.to_stage] = entry
        return timeline

    def stage_reached_at(self, hn: str, stage: Stage) -> Optional[datetime]:
        entry = self.timeline_for(hn).get(stage)
        return entry.timestamp if entry is not None else None

    def has_event(self, event_id: str) -> bool:
        """Whether an entry for this outbox event was already recorded."""
        return bool(event_id) and any(e.event_id == event_id for e in self._entries)

    def __len__(self) -> int:
        return len(self._entries)
