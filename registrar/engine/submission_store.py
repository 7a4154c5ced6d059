"""
Learn2Earn Registrar — Submission Store
========================================
Durable record of one proof submission per wallet identity. Single source of
truth for the moderation lifecycle:

    PENDING ──(ledger grading succeeded)──► APPROVED | REJECTED

Uniqueness is enforced by the UNIQUE constraint on `identity`, never by a
read-then-insert check, so concurrent creates cannot both win.
finalize_decision() is the only mutation after creation and is a single
conditional UPDATE guarded by decision = PENDING.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from engine.errors import (
    AlreadyDecidedError,
    DuplicateSubmissionError,
    StoreUnavailableError,
    SubmissionNotFoundError,
    ValidationError,
)

logger = logging.getLogger("registrar.store")

Base = declarative_base()


class Decision(str, Enum):
    PENDING  = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


def canonical_identity(identity: Optional[str]) -> str:
    """Wallet addresses are case-insensitive; store them lower-case."""
    if identity is None or not str(identity).strip():
        raise ValidationError("identity is required")
    return str(identity).strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionRecord(Base):
    __tablename__ = "submissions"

    id              = Column(Integer, primary_key=True, autoincrement=True)
    identity        = Column(String(128), unique=True, nullable=False)
    display_name    = Column(String(255), nullable=False)
    proof_reference = Column(Text, nullable=False)
    submitted_at    = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    decision        = Column(String(16), nullable=False, default=Decision.PENDING.value)
    decided_at      = Column(DateTime(timezone=True), nullable=True)
    moderator_notes = Column(Text, nullable=True)
    reward_claimed  = Column(Boolean, nullable=False, default=False)
    claimed_at      = Column(DateTime(timezone=True), nullable=True)
    ledger_tx_id    = Column(String(80), nullable=True)


@dataclass(frozen=True)
class Submission:
    identity:        str
    display_name:    str
    proof_reference: str
    submitted_at:    datetime
    decision:        Decision       = Decision.PENDING
    decided_at:      Optional[datetime] = None
    moderator_notes: Optional[str]  = None
    reward_claimed:  bool           = False
    claimed_at:      Optional[datetime] = None
    ledger_tx_id:    Optional[str]  = None

    @property
    def approved(self) -> bool:
        return self.decision == Decision.APPROVED

    @classmethod
    def from_record(cls, record: SubmissionRecord) -> "Submission":
        return cls(
            identity        = record.identity,
            display_name    = record.display_name,
            proof_reference = record.proof_reference,
            submitted_at    = record.submitted_at,
            decision        = Decision(record.decision),
            decided_at      = record.decided_at,
            moderator_notes = record.moderator_notes,
            reward_claimed  = bool(record.reward_claimed),
            claimed_at      = record.claimed_at,
            ledger_tx_id    = record.ledger_tx_id,
        )


class SubmissionStore:

    def __init__(self, database_url: str = "sqlite:///./submissions.db", echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # API handlers run in FastAPI's threadpool
            connect_args["check_same_thread"] = False
        self.engine = create_engine(database_url, echo=echo, future=True, connect_args=connect_args)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        self.database_url = database_url

    def init_schema(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not initialise submission store: {e}") from e
        logger.info(f"Submission store ready ({self.engine.url.render_as_string(hide_password=True)})")

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Store ping failed: {e}")
            return False

    # ------------------------------------------------------------------
    def create(self, identity: str, display_name: str, proof_reference: str) -> Submission:
        identity = canonical_identity(identity)
        if display_name is None or not str(display_name).strip():
            raise ValidationError("displayName is required")
        if proof_reference is None or not str(proof_reference).strip():
            raise ValidationError("proofReference is required")

        record = SubmissionRecord(
            identity        = identity,
            display_name    = str(display_name).strip(),
            proof_reference = str(proof_reference).strip(),
            submitted_at    = _utcnow(),
            decision        = Decision.PENDING.value,
            reward_claimed  = False,
        )
        try:
            with self.SessionLocal() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                submission = Submission.from_record(record)
        except IntegrityError as e:
            raise DuplicateSubmissionError(identity) from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to save submission: {e}") from e

        logger.info(f"[SUBMIT] New submission from {identity}")
        return submission

    def get(self, identity: str) -> Optional[Submission]:
        identity = canonical_identity(identity)
        try:
            with self.SessionLocal() as session:
                record = session.execute(
                    select(SubmissionRecord).where(SubmissionRecord.identity == identity)
                ).scalar_one_or_none()
                return Submission.from_record(record) if record else None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to fetch submission: {e}") from e

    def list_all(self, decision: Optional[Decision] = None) -> List[Submission]:
        stmt = select(SubmissionRecord).order_by(
            SubmissionRecord.submitted_at.desc(), SubmissionRecord.id.desc()
        )
        if decision is not None:
            stmt = stmt.where(SubmissionRecord.decision == Decision(decision).value)
        try:
            with self.SessionLocal() as session:
                return [Submission.from_record(r) for r in session.execute(stmt).scalars()]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to fetch submissions: {e}") from e

    def list_approved(self) -> List[Tuple[str, str]]:
        stmt = (
            select(SubmissionRecord.identity, SubmissionRecord.display_name)
            .where(SubmissionRecord.decision == Decision.APPROVED.value)
            .order_by(SubmissionRecord.id)
        )
        try:
            with self.SessionLocal() as session:
                return [(row.identity, row.display_name) for row in session.execute(stmt)]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to fetch approved submissions: {e}") from e

    # ------------------------------------------------------------------
    def finalize_decision(
        self,
        identity:        str,
        decision:        Decision,
        moderator_notes: Optional[str],
        ledger_tx_id:    Optional[str],
    ) -> Submission:
        """
        Record the moderation outcome. Only legal once, from PENDING.
        ledger_tx_id is written only where none was recorded before.
        """
        identity = canonical_identity(identity)
        decision = Decision(decision)
        if decision == Decision.PENDING:
            raise ValidationError("decision must be APPROVED or REJECTED")

        now      = _utcnow()
        approved = decision == Decision.APPROVED
        values = {
            "decision":        decision.value,
            "decided_at":      now,
            "moderator_notes": moderator_notes or None,
            "reward_claimed":  approved,
            "claimed_at":      now if approved else None,
        }
        if ledger_tx_id:
            values["ledger_tx_id"] = ledger_tx_id

        try:
            with self.SessionLocal() as session:
                result = session.execute(
                    update(SubmissionRecord)
                    .where(
                        SubmissionRecord.identity == identity,
                        SubmissionRecord.decision == Decision.PENDING.value,
                        SubmissionRecord.ledger_tx_id.is_(None),
                    )
                    .values(**values)
                )
                if result.rowcount != 1:
                    session.rollback()
                    existing = session.execute(
                        select(SubmissionRecord).where(SubmissionRecord.identity == identity)
                    ).scalar_one_or_none()
                    if existing is None:
                        raise SubmissionNotFoundError(identity)
                    raise AlreadyDecidedError(identity, existing.decision)
                session.commit()
                record = session.execute(
                    select(SubmissionRecord).where(SubmissionRecord.identity == identity)
                ).scalar_one()
                submission = Submission.from_record(record)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to update submission: {e}") from e

        logger.info(
            f"[DECISION] {identity} → {decision.value} "
            f"(claimed={submission.reward_claimed}, tx={submission.ledger_tx_id})"
        )
        return submission
