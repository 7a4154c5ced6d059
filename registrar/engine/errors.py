"""
Learn2Earn Registrar — Error Taxonomy
======================================
Every failure the registrar raises on purpose derives from RegistrarError and
carries the HTTP status the API answers with.
"""

from __future__ import annotations

from typing import Optional


class RegistrarError(Exception):
    status_code = 500


class ValidationError(RegistrarError):
    """Missing or malformed input. Rejected before any side effect."""
    status_code = 400


class DuplicateSubmissionError(RegistrarError):
    status_code = 400

    def __init__(self, identity: str):
        super().__init__("You have already submitted a proof")
        self.identity = identity


class UnauthorizedError(RegistrarError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class SubmissionNotFoundError(RegistrarError):
    status_code = 404

    def __init__(self, identity: str):
        super().__init__(f"No submission found for {identity}")
        self.identity = identity


class AlreadyDecidedError(RegistrarError):
    status_code = 409

    def __init__(self, identity: str, decision: str):
        super().__init__(f"Submission for {identity} was already {decision.lower()}")
        self.identity = identity
        self.decision = decision


class ModerationInProgressError(RegistrarError):
    status_code = 409

    def __init__(self, identity: str):
        super().__init__(f"A moderation for {identity} is already in progress")
        self.identity = identity


class LedgerFailureError(RegistrarError):
    """The on-chain grading call reverted or never made it to the chain."""
    status_code = 500

    def __init__(self, reason: str, tx_id: Optional[str] = None):
        super().__init__(f"Failed to process on blockchain: {reason}")
        self.reason = reason
        self.tx_id  = tx_id


class StoreUnavailableError(RegistrarError):
    status_code = 500


class StoreFailureError(RegistrarError):
    """
    Persisting the decision failed AFTER the ledger accepted the grading call.
    The chain and the local store now disagree; manual reconciliation needed.
    """
    status_code = 500

    def __init__(self, identity: str, tx_id: Optional[str], cause: Exception):
        super().__init__(
            f"Grading for {identity} succeeded on-chain (tx {tx_id}) "
            f"but could not be recorded: {cause}"
        )
        self.identity = identity
        self.tx_id    = tx_id
        self.cause    = cause
