"""
Learn2Earn Registrar — Ledger Gateway
======================================
Grades a submission on-chain by calling

    Learn2Earn.gradeSubmission(address studentAddress, bool approved)

signed with the registrar key. When approved=true the contract distributes
the reward to the student in the same transaction, so this call is the one
irreversible side effect of the whole moderation flow.

Pipeline (blocking, never fire-and-forget):
    1. Encode call      : selector(keccak("gradeSubmission(address,bool)")) ++ abi.encode(...)
    2. Sign + broadcast : eth_account legacy transaction, pending nonce
    3. Confirm          : wait_for_transaction_receipt (bounded by timeout)
    4. Interpret        : status 0 → reverted, revert data replayed via eth_call

No retries. A reverted or failed grading is reported, never resubmitted: the
contract is expected to refuse a second grading of the same student, but
that is the contract's guarantee, not ours.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from engine.config import LedgerConfig

logger = logging.getLogger("registrar.ledger")

GRADE_SUBMISSION_SIGNATURE = "gradeSubmission(address,bool)"
GRADE_SUBMISSION_SELECTOR  = bytes(Web3.keccak(text=GRADE_SUBMISSION_SIGNATURE))[:4]

# Solidity revert payload selectors
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")   # Error(string)
PANIC_SELECTOR        = bytes.fromhex("4e487b71")   # Panic(uint256)


class LedgerConfigurationError(RuntimeError):
    pass


class ConfirmationTimeoutError(RuntimeError):
    """Broadcast succeeded but no receipt arrived in time. Outcome unknown."""

    def __init__(self, tx_id: str, timeout_sec: float):
        super().__init__(f"No receipt for {tx_id} after {timeout_sec:.0f}s")
        self.tx_id       = tx_id
        self.timeout_sec = timeout_sec


@dataclass
class LedgerReceipt:
    tx_id:    str
    reverted: bool
    outputs:  List[bytes] = field(default_factory=list)


@dataclass
class LedgerResult:
    success: bool
    tx_id:   Optional[str] = None
    reason:  Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "txId": self.tx_id, "reason": self.reason}


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------
def encode_grade_submission(identity: str, approved: bool) -> bytes:
    student = Web3.to_checksum_address(identity)
    return GRADE_SUBMISSION_SELECTOR + abi_encode(["address", "bool"], [student, bool(approved)])


def decode_revert_reason(data: bytes) -> str:
    """Best-effort human reading of revert output; raw hex when nothing better."""
    if not data:
        return ""
    if data[:4] == ERROR_STRING_SELECTOR:
        try:
            (message,) = abi_decode(["string"], data[4:])
            return message
        except Exception:
            pass
    elif data[:4] == PANIC_SELECTOR:
        try:
            (code,) = abi_decode(["uint256"], data[4:])
            return f"Panic(0x{code:02x})"
        except Exception:
            pass
    else:
        try:
            as_text = data.decode("utf-8")
            if as_text.isascii() and as_text.isprintable():
                return as_text
        except UnicodeDecodeError:
            pass
    return f"Data: 0x{data.hex()}"


def derive_address_from_credential(private_key_hex: str) -> str:
    """
    secp256k1 public key → keccak256(uncompressed point without 0x04)[-20:],
    returned EIP-55 checksummed. Same result as eth_account.Account.from_key.
    """
    key_bytes = bytes.fromhex(private_key_hex.strip().removeprefix("0x"))
    if len(key_bytes) != 32:
        raise LedgerConfigurationError("Registrar private key must be 32 bytes of hex")
    private_key = ec.derive_private_key(int.from_bytes(key_bytes, "big"), ec.SECP256K1())
    pub_bytes = private_key.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    return Web3.to_checksum_address("0x" + bytes(Web3.keccak(pub_bytes[1:]))[-20:].hex())


# ---------------------------------------------------------------------------
# web3.py client
# ---------------------------------------------------------------------------
class Web3LedgerClient:
    """Signs and broadcasts registrar transactions over an HTTP JSON-RPC node."""

    def __init__(self, config: LedgerConfig, w3: Optional[Web3] = None):
        self.config = config
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(config.network_url, request_kwargs={"timeout": config.rpc_timeout_sec})
        )

    def derive_address_from_credential(self, secret: str) -> str:
        return derive_address_from_credential(secret)

    def submit_and_confirm(self, contract_address: str, encoded_call: bytes) -> LedgerReceipt:
        if not self.config.registrar_private_key:
            raise LedgerConfigurationError("REGISTRAR_PRIVATE_KEY is not configured")

        account = Account.from_key(self.config.registrar_private_key)
        target  = Web3.to_checksum_address(contract_address)

        tx = {
            "to":       target,
            "from":     account.address,
            "data":     Web3.to_hex(encoded_call),
            "value":    0,
            "gas":      self.config.gas_limit,
            "nonce":    self.w3.eth.get_transaction_count(account.address, "pending"),
            "chainId":  self.config.chain_id or self.w3.eth.chain_id,
            "gasPrice": self.w3.eth.gas_price,
        }
        signed  = account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_id   = Web3.to_hex(tx_hash)
        logger.info(f"[LEDGER] Transaction sent: {tx_id}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.config.confirmation_timeout_sec,
                poll_latency=self.config.poll_interval_sec,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(tx_id, self.config.confirmation_timeout_sec) from e

        if receipt["status"] == 1:
            return LedgerReceipt(tx_id=tx_id, reverted=False)

        outputs = self._replay_revert_data(tx, receipt["blockNumber"])
        return LedgerReceipt(tx_id=tx_id, reverted=True, outputs=outputs)

    def _replay_revert_data(self, tx: dict, block_number: int) -> List[bytes]:
        """Receipts carry no revert data on EVM chains; re-run the call to get it."""
        call = {k: tx[k] for k in ("to", "from", "data", "value", "gas")}
        try:
            self.w3.eth.call(call, block_number)
        except ContractLogicError as e:
            data = e.data
            if isinstance(data, str) and data.startswith("0x") and len(data) > 2:
                return [bytes.fromhex(data[2:])]
            if isinstance(data, (bytes, bytearray)) and data:
                return [bytes(data)]
            return [str(e).encode()]
        except Web3Exception as e:
            logger.warning(f"[LEDGER] Could not replay reverted call: {e}")
        return []


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class LedgerGateway:

    def __init__(self, config: LedgerConfig, client=None):
        self.config = config
        self.client = client or Web3LedgerClient(config)

    @property
    def registrar_address(self) -> Optional[str]:
        if not self.config.registrar_private_key:
            return None
        try:
            return self.client.derive_address_from_credential(self.config.registrar_private_key)
        except (ValueError, LedgerConfigurationError) as e:
            logger.error(f"Invalid registrar key: {e}")
            return None

    def grade_on_chain(self, identity: str, approved: bool) -> LedgerResult:
        logger.info(
            f"[LEDGER] Grading {identity} on-chain: {'approved' if approved else 'rejected'}"
        )
        try:
            encoded = encode_grade_submission(identity, approved)
            receipt = self.client.submit_and_confirm(self.config.contract_address, encoded)
        except ConfirmationTimeoutError as e:
            logger.error(f"[LEDGER] {e}; submission left pending")
            return LedgerResult(
                success=False,
                tx_id=e.tx_id,
                reason=f"Confirmation timed out after {e.timeout_sec:.0f}s (tx {e.tx_id})",
            )
        except Exception as e:
            logger.error(f"[LEDGER] gradeSubmission failed before broadcast: {e}", exc_info=True)
            return LedgerResult(success=False, reason=str(e) or type(e).__name__)

        if not receipt.reverted:
            logger.info(f"[LEDGER] ✅ Transaction successful: {receipt.tx_id}")
            if approved:
                logger.info(f"[LEDGER] ✅ Reward distributed to {identity}")
            return LedgerResult(success=True, tx_id=receipt.tx_id)

        reason = "Transaction was reverted"
        payload = next((o for o in receipt.outputs if o), b"")
        detail  = decode_revert_reason(payload)
        if detail:
            reason += f" - {detail}"
        logger.error(f"[LEDGER] ❌ {reason} (tx {receipt.tx_id})")
        return LedgerResult(success=False, tx_id=receipt.tx_id, reason=reason)
