"""
Learn2Earn Registrar — Moderation Workflow
===========================================
Approve / reject a pending submission and grade it on-chain.

Per submission:
    1. AuthorizeCheck  constant-time moderator key comparison
    2. Serialize       per-identity lock; a second moderator on the same
                       wallet is refused (or waits, if configured)
    3. PreCheck        submission exists and is still PENDING
    4. InvokeLedger    LedgerGateway.grade_on_chain, chain first
    5. Commit          SubmissionStore.finalize_decision

The store is only written after the chain confirmed the grading, so the local
record never claims an outcome the chain does not have. The reverse gap
(chain graded, store write failed) cannot be repaired here: it is logged at
CRITICAL and queued in `divergences` for manual reconciliation.

Locks are process-local. Run the API as a single worker process.
"""

from __future__ import annotations

import hmac
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from engine.errors import (
    AlreadyDecidedError,
    LedgerFailureError,
    ModerationInProgressError,
    StoreFailureError,
    SubmissionNotFoundError,
    UnauthorizedError,
)
from engine.ledger_gateway import LedgerGateway
from engine.submission_store import Decision, Submission, SubmissionStore, canonical_identity

logger = logging.getLogger("registrar.moderation")


class IdentityLocks:
    """Mapping identity → mutex. Entries are dropped once nobody holds or waits."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, identity: str, wait_sec: float = 0.0) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(identity, threading.Lock())
            self._users[identity] = self._users.get(identity, 0) + 1
        try:
            if wait_sec and wait_sec > 0:
                acquired = lock.acquire(timeout=wait_sec)
            else:
                acquired = lock.acquire(blocking=False)
            if not acquired:
                raise ModerationInProgressError(identity)
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._users[identity] -= 1
                if self._users[identity] == 0:
                    del self._users[identity]
                    del self._locks[identity]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class Divergence:
    identity:    str
    decision:    Decision
    tx_id:       Optional[str]
    error:       str
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "identity":   self.identity,
            "decision":   self.decision.value,
            "txId":       self.tx_id,
            "error":      self.error,
            "detectedAt": self.detected_at.isoformat(),
        }


@dataclass
class ModerationOutcome:
    identity:            str
    approved:            bool
    tx_id:               Optional[str]
    rewards_distributed: bool
    submission:          Submission


class ModerationWorkflow:

    def __init__(
        self,
        store:         SubmissionStore,
        gateway:       LedgerGateway,
        moderator_key: Optional[str],
        lock_wait_sec: float = 0.0,
    ):
        self.store         = store
        self.gateway       = gateway
        self._moderator_key = moderator_key
        self.lock_wait_sec = lock_wait_sec
        self.locks         = IdentityLocks()
        self._divergences: List[Divergence] = []
        self._divergence_lock = threading.Lock()

    # ------------------------------------------------------------------
    def authorize(self, supplied_key: Optional[str]) -> None:
        if not self._moderator_key or not supplied_key:
            raise UnauthorizedError()
        if not hmac.compare_digest(supplied_key.encode(), self._moderator_key.encode()):
            raise UnauthorizedError()

    @property
    def divergences(self) -> List[Divergence]:
        with self._divergence_lock:
            return list(self._divergences)

    # ------------------------------------------------------------------
    def moderate(
        self,
        identity:        str,
        approved:        bool,
        moderator_notes: Optional[str],
        moderator_key:   Optional[str],
    ) -> ModerationOutcome:
        self.authorize(moderator_key)
        identity = canonical_identity(identity)
        decision = Decision.APPROVED if approved else Decision.REJECTED

        with self.locks.hold(identity, self.lock_wait_sec):
            current = self.store.get(identity)
            if current is None:
                raise SubmissionNotFoundError(identity)
            diverged = self._divergence_for(identity)
            if diverged is not None:
                # graded on-chain already; only manual reconciliation may touch it
                raise AlreadyDecidedError(identity, diverged.decision.value)
            if current.decision != Decision.PENDING:
                raise AlreadyDecidedError(identity, current.decision.value)

            logger.info(f"[MODERATE] Grading {identity}: {decision.value}")
            result = self.gateway.grade_on_chain(identity, approved)
            if not result.success:
                logger.error(
                    f"[MODERATE] Ledger grading failed for {identity}: {result.reason} "
                    f"(submission stays PENDING)"
                )
                raise LedgerFailureError(result.reason or "unknown ledger error", result.tx_id)

            try:
                submission = self.store.finalize_decision(
                    identity, decision, moderator_notes, result.tx_id
                )
            except Exception as e:
                self._record_divergence(identity, decision, result.tx_id, e)
                raise StoreFailureError(identity, result.tx_id, e) from e

        return ModerationOutcome(
            identity            = identity,
            approved            = approved,
            tx_id               = result.tx_id,
            rewards_distributed = approved,
            submission          = submission,
        )

    def _divergence_for(self, identity: str) -> Optional[Divergence]:
        with self._divergence_lock:
            return next((d for d in self._divergences if d.identity == identity), None)

    def _record_divergence(
        self, identity: str, decision: Decision, tx_id: Optional[str], error: Exception
    ) -> None:
        entry = Divergence(identity=identity, decision=decision, tx_id=tx_id, error=str(error))
        with self._divergence_lock:
            self._divergences.append(entry)
        logger.critical(
            f"\n{'=' * 70}\n"
            f"[RECONCILE] CHAIN/STORE DIVERGENCE: {identity} graded {decision.value} "
            f"on-chain (tx {tx_id}) but the stored decision could not be confirmed "
            f"(store state unknown).\n"
            f"Cause: {error}\n"
            f"Manual reconciliation required; do NOT re-moderate this wallet.\n"
            f"{'=' * 70}"
        )
