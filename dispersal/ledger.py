"""
Ledger Clients
==============

The dispersal engine talks to the chain through two calls only:
``get_balance`` and a blocking ``submit_and_confirm``. Confirmation is
all-or-nothing.

- Web3Ledger: JSON-RPC node via web3.py, native-value transfers
- SimulatedLedger: in-memory balances for dry runs and tests
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from web3 import Web3
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .models import WalletAccount
from .utils import logger, format_address, format_tx_hash, sanitize_error_message, validate_address


@dataclass(frozen=True)
class TransferIntent:
    from_address: str
    to_address: str
    amount: int


@dataclass(frozen=True)
class TransferResult:
    ok: bool
    tx_ref: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, tx_ref: str) -> "TransferResult":
        return cls(ok=True, tx_ref=tx_ref)

    @classmethod
    def failure(cls, reason: str, tx_ref: Optional[str] = None) -> "TransferResult":
        return cls(ok=False, tx_ref=tx_ref, reason=reason)


class Ledger(ABC):
    """Balance query and blocking transfer submission."""

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Current balance in smallest units."""

    @abstractmethod
    def submit_and_confirm(self, intent: TransferIntent, signers: Sequence[WalletAccount]) -> TransferResult:
        """Submit a transfer and block until it is confirmed or has failed."""

    def validate_address(self, address: str) -> bool:
        return validate_address(address)


def _signer_for(intent: TransferIntent, signers: Sequence[WalletAccount]) -> Optional[WalletAccount]:
    for signer in signers:
        if signer.address.lower() == intent.from_address.lower():
            return signer
    return None


class Web3Ledger(Ledger):
    """
    Ledger backed by a web3 JSON-RPC connection.

    A transfer is only submitted when the network gas price keeps its cost
    within the fee budgeted per transfer; otherwise it fails unsent. Amounts
    are wei, so the config needs ``decimals: 18`` and fee constants sized
    for the chain (``21000 * gas price``).
    """

    GAS_LIMIT = 21000
    NATIVE_DECIMALS = 18

    def __init__(self, web3: Web3, chain_id: int, fee_budget: int, confirm_timeout: int = 60):
        self.web3 = web3
        self.chain_id = chain_id
        self.fee_budget = fee_budget
        self.confirm_timeout = confirm_timeout

    @classmethod
    def from_config(cls, config) -> "Web3Ledger":
        web3 = Web3(Web3.HTTPProvider(config.rpc_url))
        return cls(
            web3=web3,
            chain_id=config.chain_id,
            fee_budget=config.fee_per_transfer,
            confirm_timeout=config.confirm_timeout_seconds,
        )

    def is_connected(self) -> bool:
        return self.web3.is_connected()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OSError),  # requests errors derive from OSError
        reraise=True
    )
    def get_balance(self, address: str) -> int:
        return int(self.web3.eth.get_balance(Web3.to_checksum_address(address)))

    def network_fee(self) -> int:
        """What a plain transfer costs at the current network gas price."""
        return int(self.web3.eth.gas_price) * self.GAS_LIMIT

    def fee_shortfall(self) -> int:
        """How far the per-transfer fee budget falls below the network fee (0 if covered)."""
        return max(self.network_fee() - self.fee_budget, 0)

    def submit_and_confirm(self, intent: TransferIntent, signers: Sequence[WalletAccount]) -> TransferResult:
        signer = _signer_for(intent, signers)
        if signer is None:
            return TransferResult.failure(f"No signer for {format_address(intent.from_address)}")
        if intent.amount <= 0:
            return TransferResult.failure("Transfer amount must be positive")

        try:
            gas_price = int(self.web3.eth.gas_price)
            if gas_price * self.GAS_LIMIT > self.fee_budget:
                # Never submit at a price the node would not mine
                return TransferResult.failure(
                    f"Fee budget below network gas price: transfer needs {gas_price * self.GAS_LIMIT} "
                    f"but fee_per_transfer is {self.fee_budget}"
                )

            tx = {
                'to': Web3.to_checksum_address(intent.to_address),
                'value': intent.amount,
                'gas': self.GAS_LIMIT,
                'gasPrice': gas_price,
                'nonce': self.web3.eth.get_transaction_count(signer.address, 'pending'),
                'chainId': self.chain_id,
            }

            signed_tx = signer.signer.sign_transaction(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            tx_ref = tx_hash.hex()

            logger.info(
                f"Sent {format_address(intent.from_address)} -> {format_address(intent.to_address)}: "
                f"{format_tx_hash(tx_ref)}"
            )

            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirm_timeout)

            if receipt['status'] != 1:
                return TransferResult.failure("Transaction reverted", tx_ref=tx_ref)
            return TransferResult.success(tx_ref)

        except Exception as e:
            reason = sanitize_error_message(e)
            logger.error(f"Transfer from {format_address(intent.from_address)} failed: {reason}")
            return TransferResult.failure(reason)


class SimulatedLedger(Ledger):
    """
    In-memory ledger.

    Every confirmed transfer costs the sender ``fee_per_transaction``;
    a transfer that would overdraw the sender is rejected.
    """

    def __init__(self, fee_per_transaction: int = 5000):
        self.fee_per_transaction = fee_per_transaction
        self.balances: Dict[str, int] = {}
        self.submissions: List[TransferIntent] = []
        self.balance_reads: int = 0
        self._rejections: Dict[str, str] = {}

    def fund(self, address: str, amount: int):
        self.balances[address] = self.balances.get(address, 0) + amount

    def reject_transfers_from(self, address: str, reason: str = "simulated rejection"):
        """Make every later transfer out of ``address`` fail."""
        self._rejections[address] = reason

    def get_balance(self, address: str) -> int:
        self.balance_reads += 1
        return self.balances.get(address, 0)

    def submit_and_confirm(self, intent: TransferIntent, signers: Sequence[WalletAccount]) -> TransferResult:
        self.submissions.append(intent)

        if _signer_for(intent, signers) is None:
            return TransferResult.failure(f"No signer for {format_address(intent.from_address)}")
        if intent.from_address in self._rejections:
            return TransferResult.failure(self._rejections[intent.from_address])
        if intent.amount <= 0:
            return TransferResult.failure("Transfer amount must be positive")

        balance = self.balances.get(intent.from_address, 0)
        needed = intent.amount + self.fee_per_transaction
        if balance < needed:
            return TransferResult.failure(f"Insufficient funds: balance {balance}, need {needed}")

        self.balances[intent.from_address] = balance - needed
        self.fund(intent.to_address, intent.amount)
        return TransferResult.success(f"sim-{len(self.submissions)}")
