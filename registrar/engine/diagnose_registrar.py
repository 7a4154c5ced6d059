"""
Run this on the registrar host to diagnose why gradeSubmission keeps failing.
Usage: python3 -m engine.diagnose_registrar
"""
import sys

from dotenv import load_dotenv
from web3 import Web3

from engine.config import LedgerConfig
from engine.ledger_gateway import (
    GRADE_SUBMISSION_SELECTOR,
    GRADE_SUBMISSION_SIGNATURE,
    LedgerConfigurationError,
    Web3LedgerClient,
)


def run(config: LedgerConfig, client: Web3LedgerClient = None) -> int:
    client = client or Web3LedgerClient(config)
    failures = 0

    print("=" * 60)
    print("  LEARN2EARN REGISTRAR DIAGNOSIS")
    print("=" * 60)

    if not config.registrar_private_key:
        print("❌ REGISTRAR_PRIVATE_KEY not found in environment / .env")
        return 1
    try:
        registrar = client.derive_address_from_credential(config.registrar_private_key)
    except (ValueError, LedgerConfigurationError) as e:
        print(f"❌ REGISTRAR_PRIVATE_KEY is not a valid secp256k1 key: {e}")
        return 1

    print(f"\n✅ Registrar address computed from REGISTRAR_PRIVATE_KEY:")
    print(f"   {registrar}")
    print(f"   Must equal the contract's registrar, otherwise every grading reverts.")
    print(f"\n   Call      : {GRADE_SUBMISSION_SIGNATURE}")
    print(f"   Selector  : 0x{GRADE_SUBMISSION_SELECTOR.hex()}")
    print(f"   Contract  : {config.contract_address}")
    print(f"   Node      : {config.network_url}")

    w3 = client.w3
    if not w3.is_connected():
        print(f"\n❌ Cannot reach node at {config.network_url}")
        return 1

    chain_id = w3.eth.chain_id
    print(f"\n✅ Node reachable, chain id {chain_id}")
    if config.chain_id and config.chain_id != chain_id:
        print(f"❌ LEDGER_CHAIN_ID={config.chain_id} does not match the node ({chain_id})")
        failures += 1

    balance = w3.eth.get_balance(registrar)
    print(f"   Registrar balance: {Web3.from_wei(balance, 'ether')} (native units)")
    needed = config.gas_limit * w3.eth.gas_price
    if balance < needed:
        print(f"❌ Balance below one grading at current gas price ({needed} wei); fund the registrar")
        failures += 1

    code = w3.eth.get_code(Web3.to_checksum_address(config.contract_address))
    if len(code) == 0:
        print(f"❌ No contract code at {config.contract_address}: wrong address or network?")
        failures += 1
    else:
        print(f"✅ Contract code present ({len(code)} bytes)")

    print()
    print("=" * 60)
    print("  ✅ All checks passed" if failures == 0 else f"  ❌ {failures} check(s) failed")
    print("=" * 60)
    return 0 if failures == 0 else 1


def main() -> None:
    load_dotenv()
    sys.exit(run(LedgerConfig.from_env()))


if __name__ == "__main__":
    main()
