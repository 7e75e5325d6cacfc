"""
Ledger interface and in-memory implementation.

The ledger is the single authoritative store of one ErrorRecord per
fingerprint. Every mutation goes through one atomic operation per
fingerprint, so callers never read a record and write it back.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional

from burstguard.models.decision import Observation
from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy, ErrorRecord
from burstguard.services.state_machine import (
    escalation_transition,
    is_escalation_due,
    observe_transition,
)

logger = logging.getLogger(__name__)


class Ledger(ABC):
    """Base interface for ledger backends."""

    async def initialize(self) -> None:
        """Open connections. Called once at startup."""
        pass

    async def close(self) -> None:
        """Release connections. Called once at shutdown."""
        pass

    async def ping(self) -> bool:
        """Return True when the backing store is reachable."""
        return True

    async def peek(self, fingerprint: str) -> Optional[ErrorRecord]:
        """
        Return a local, possibly stale snapshot without touching the store.

        Only cached ledgers have one; the authoritative backends return None.
        """
        return None

    @abstractmethod
    async def observe(
        self,
        fingerprint: str,
        event: ErrorEvent,
        policy: BurstPolicy,
        now: datetime,
    ) -> Observation:
        """
        Apply one occurrence atomically.

        Args:
            fingerprint: Event fingerprint
            event: Event with canonicalized message and resolved occurred_at
            policy: Burst windows
            now: Receipt time used for clock checks and burst flushes

        Returns:
            Observation with the updated record and verdict

        Raises:
            StoreUnavailable: If the store cannot complete the operation
        """
        pass

    @abstractmethod
    async def mark_escalated(
        self,
        fingerprint: str,
        now: datetime,
        trigger: EscalationTrigger = EscalationTrigger.SWEEP,
    ) -> Optional[EscalationTask]:
        """
        Atomically commit the escalation if it is due.

        Returns:
            EscalationTask when this call committed it, None otherwise

        Raises:
            StoreUnavailable: If the store cannot complete the operation
        """
        pass

    @abstractmethod
    async def find_by_fingerprint(self, fingerprint: str) -> Optional[ErrorRecord]:
        """Return the stored record, or None."""
        pass

    @abstractmethod
    async def scan_due(self, now: datetime, limit: int = 500) -> List[ErrorRecord]:
        """Return up to ``limit`` records muted until <= now and not escalated."""
        pass


class InMemoryLedger(Ledger):
    """
    Process-local ledger.

    Each operation runs under the store lock, which makes it the
    serialization point for every fingerprint in this process.
    """

    def __init__(self):
        self._records: Dict[str, ErrorRecord] = {}
        self._lock = Lock()

    async def observe(
        self,
        fingerprint: str,
        event: ErrorEvent,
        policy: BurstPolicy,
        now: datetime,
    ) -> Observation:
        with self._lock:
            observation = observe_transition(
                self._records.get(fingerprint), fingerprint, event, policy, now
            )
            self._records[fingerprint] = observation.record

        logger.debug(
            f"Observed {fingerprint}: {observation.verdict.value} "
            f"(count={observation.record.occurrence_count})"
        )
        return observation

    async def mark_escalated(
        self,
        fingerprint: str,
        now: datetime,
        trigger: EscalationTrigger = EscalationTrigger.SWEEP,
    ) -> Optional[EscalationTask]:
        with self._lock:
            record = self._records.get(fingerprint)
            updated, task = escalation_transition(record, now, trigger)
            if task is not None:
                self._records[fingerprint] = updated
        return task

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[ErrorRecord]:
        with self._lock:
            return self._records.get(fingerprint)

    async def scan_due(self, now: datetime, limit: int = 500) -> List[ErrorRecord]:
        with self._lock:
            due = [r for r in self._records.values() if is_escalation_due(r, now)]
        due.sort(key=lambda r: r.muted_until)
        return due[:limit]

    def __len__(self) -> int:
        return len(self._records)
