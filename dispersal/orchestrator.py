"""
Dispersal Orchestrator
======================

Moves the deposit of a run through every path:

1. AWAITING_FUNDING - poll the funding wallet until a balance shows up
2. SEEDING          - allocate amounts, push each one to its path's first intermediate
3. RELAYING         - forward each path hop by hop down to its landing wallet
4. DONE / FAILED / CANCELLED

All transfers are sequential and blocking. A failed hop abandons the rest
of its own path only; the run goes on with the next path. Whole-run
failures (nothing to allocate) happen before any transfer is submitted.
"""

import random
import threading
from datetime import datetime
from typing import List, Optional

from .allocator import allocate, validate_bounds
from .config import DispersalConfig
from .fees import FeeModel, HOPS_PER_PATH
from .ledger import Ledger, TransferIntent
from .models import (
    HopStatus,
    Run,
    RunState,
    RunStatus,
    TransferRecord,
    WalletAccount,
    DispersalPath,
    SEED_SLOT,
    LANDING_SLOT,
)
from .utils import (
    logger,
    format_address,
    format_units,
    sanitize_error_message,
    AllocationImpossibleError,
    DispersalCancelled,
    HopInsufficientBalanceError,
    TransferFailedError,
)


class CancellationToken:
    """Lets another thread stop a run between transfers or during a wait."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise DispersalCancelled("Run cancelled")


class DispersalOrchestrator:
    """
    Drives one Run through the dispersal state machine.

    Status changes are written to ``run.state`` which pushes a snapshot to
    every subscriber after each transition.
    """

    def __init__(
        self,
        run: Run,
        ledger: Ledger,
        config: Optional[DispersalConfig] = None,
        token: Optional[CancellationToken] = None,
        rng: Optional[random.Random] = None,
    ):
        self.run = run
        self.ledger = ledger
        self.config = config or DispersalConfig()
        self.fees: FeeModel = self.config.fee_model()
        self.token = token or CancellationToken()
        self.rng = rng
        self._started = False

    @property
    def state(self) -> RunState:
        return self.run.state

    def units(self, amount: int) -> str:
        return format_units(amount, self.fees.decimals)

    def execute(self, min_amount: Optional[float] = None, max_amount: Optional[float] = None) -> RunState:
        """
        Run the whole dispersal.

        Args:
            min_amount: Lower bound of each path's random amount (native units)
            max_amount: Upper bound of each path's random amount (native units)

        Returns:
            The final RunState; inspect ``run_status`` for DONE/FAILED/CANCELLED
        """
        if self._started:
            raise RuntimeError("This run has already been started")
        self._started = True

        min_units = self.fees.to_units(self.config.min_amount if min_amount is None else min_amount)
        max_units = self.fees.to_units(self.config.max_amount if max_amount is None else max_amount)
        # Reject bad bounds before waiting on a deposit
        validate_bounds(len(self.run.paths), min_units, max_units)

        try:
            balance = self.wait_for_funding()
            self.state.set_funding_status(
                HopStatus.COMPLETED,
                f"Detected funding: {self.units(balance)}. Dispersing to intermediates..."
            )
            logger.info(self.state.last_message)

            amounts = self.prepare_amounts(balance, min_units, max_units)
            if amounts is None:
                return self.state

            self.seed(amounts)
            self.relay()

        except DispersalCancelled:
            self.state.set_run_status(RunStatus.CANCELLED, "Dispersal cancelled")
            logger.warning("Dispersal cancelled; use withdraw to recover funds that already moved")
            return self.state

        completed = sum(1 for i in range(len(self.run.paths)) if self.state.path_completed(i))
        abandoned = sum(1 for i in range(len(self.run.paths)) if self.state.path_failed(i))
        if abandoned:
            logger.warning(
                f"{abandoned} path(s) abandoned; funds left in their intermediate wallets are not swept"
            )
        self.state.set_run_status(
            RunStatus.DONE,
            f"Dispersal complete! {completed}/{len(self.run.paths)} landing wallet(s) funded."
        )
        logger.info(self.state.last_message)
        return self.state

    def wait_for_funding(self) -> int:
        """Poll the funding wallet until its balance is above zero. No timeout."""
        funding = self.run.funding
        self.state.set_run_status(
            RunStatus.AWAITING_FUNDING,
            f"Waiting for funds to arrive in the funding wallet {funding.address}..."
        )
        logger.info(self.state.last_message)

        while True:
            self.token.raise_if_cancelled()
            try:
                balance = self.ledger.get_balance(funding.address)
            except Exception as e:
                logger.warning(f"Balance check for funding wallet failed: {sanitize_error_message(e)}")
                balance = 0
            else:
                self.state.note_balance(funding.address, balance)

            if balance > 0:
                return balance
            if self.token.wait(self.config.poll_interval_seconds):
                raise DispersalCancelled("Run cancelled while waiting for funding")

    def prepare_amounts(self, balance: int, min_units: int, max_units: int) -> Optional[List[int]]:
        """Compute per-path seed amounts, or fail the run if the deposit cannot cover them."""
        num_paths = len(self.run.paths)
        total_fees = self.fees.total_fees(num_paths)
        total_reserve = self.fees.total_reserve(num_paths, self.run.intermediate_count)
        available = balance - total_fees - total_reserve

        if available <= 0:
            required = total_fees + total_reserve
            self.state.fail(
                f"Error: Insufficient balance. Need more than {self.units(required)} for fees and "
                f"reserves but the funding wallet holds {self.units(balance)}."
            )
            logger.error(self.state.last_message)
            return None

        try:
            return allocate(available, num_paths, min_units, max_units, self.fees, self.rng)
        except AllocationImpossibleError as e:
            self.state.fail(
                f"Error: Insufficient balance. Need {self.units(e.required)} but only have "
                f"{self.units(e.available)} available after fees."
            )
            logger.error(self.state.last_message)
            return None

    def seed(self, amounts: List[int]):
        """Push each path's amount from the funding wallet to its first intermediate."""
        self.state.set_run_status(RunStatus.SEEDING, "Sending funds to first intermediates...")
        funding = self.run.funding

        for path, amount in zip(self.run.paths, amounts):
            self.token.raise_if_cancelled()
            self.state.set_slot(path.index, SEED_SLOT, HopStatus.IN_PROGRESS)
            try:
                self.transfer(funding, path.intermediates[0], amount, "SEED", path.index, 0)
            except TransferFailedError as e:
                self.state.set_slot(
                    path.index, SEED_SLOT, HopStatus.ERROR,
                    f"Error sending to first intermediate for Landing Wallet {path.index + 1}: {e}"
                )
                logger.error(self.state.last_message)
                continue

            self.state.set_slot(
                path.index, SEED_SLOT, HopStatus.COMPLETED,
                f"Sent {self.units(amount)} to first intermediate for Landing Wallet {path.index + 1}."
            )
            logger.info(self.state.last_message)
            self.pause()

    def relay(self):
        """Advance every seeded path hop by hop to its landing wallet."""
        self.state.set_run_status(
            RunStatus.RELAYING,
            "All initial transfers sent. Starting intermediate chain transfers..."
        )
        logger.info(self.state.last_message)

        for path in self.run.paths:
            if self.state.slot_status(path.index, SEED_SLOT) != HopStatus.COMPLETED:
                logger.warning(f"Skipping Landing Wallet {path.index + 1}: seed transfer did not complete")
                continue

            for hop in range(1, HOPS_PER_PATH + 1):
                self.token.raise_if_cancelled()
                try:
                    self.relay_hop(path, hop)
                except (HopInsufficientBalanceError, TransferFailedError) as e:
                    self.mark_hop_error(path, hop, e)
                    break

    def relay_hop(self, path: DispersalPath, hop: int):
        """Forward everything above fee + reserve from intermediate ``hop`` to the next account."""
        sender = path.intermediates[hop - 1]
        receiver = path.hop_target(hop)
        self.state.set_slot(path.index, hop, HopStatus.IN_PROGRESS)

        try:
            balance = self.ledger.get_balance(sender.address)
        except Exception as e:
            raise TransferFailedError(f"balance query failed: {sanitize_error_message(e)}") from e
        self.state.note_balance(sender.address, balance)

        if not self.fees.clears_reserve(balance):
            raise HopInsufficientBalanceError(
                f"insufficient balance: {self.units(balance)} "
                f"(needs more than {self.units(self.fees.hop_cost)})",
                balance=balance,
                required=self.fees.hop_cost + 1,
            )

        amount = self.fees.transferable(balance)
        self.transfer(sender, receiver, amount, "RELAY", path.index, hop)

        next_name = "landing wallet" if hop == HOPS_PER_PATH else f"intermediate {hop + 1}"
        self.state.set_slot(
            path.index, hop, HopStatus.COMPLETED,
            f"{sender.label} sent {self.units(amount)} to {next_name}."
        )
        if hop == HOPS_PER_PATH:
            self.state.set_slot(path.index, LANDING_SLOT, HopStatus.COMPLETED)
        logger.info(self.state.last_message)
        self.pause()

    def mark_hop_error(self, path: DispersalPath, hop: int, error: Exception):
        sender = path.intermediates[hop - 1]
        message = f"Error: {sender.label}: {error}"
        if isinstance(error, HopInsufficientBalanceError):
            message += f" (missing {self.units(error.missing)})"
        self.state.set_slot(path.index, hop, HopStatus.ERROR, message)
        if hop == HOPS_PER_PATH:
            self.state.set_slot(path.index, LANDING_SLOT, HopStatus.ERROR)
        logger.error(message)

    def transfer(
        self,
        sender: WalletAccount,
        receiver: WalletAccount,
        amount: int,
        action: str,
        path_index: int,
        hop: int,
    ) -> TransferRecord:
        """Submit one transfer, record it, and raise TransferFailedError unless it confirmed."""
        record = TransferRecord(
            timestamp=datetime.now().isoformat(),
            action=action,
            path_index=path_index,
            hop=hop,
            from_address=sender.address,
            to_address=receiver.address,
            amount=amount,
        )
        intent = TransferIntent(sender.address, receiver.address, amount)

        try:
            result = self.ledger.submit_and_confirm(intent, [sender])
        except Exception as e:
            record.status = "FAILED"
            record.error = sanitize_error_message(e)
            self.state.record(record)
            raise TransferFailedError(record.error) from e

        record.tx_ref = result.tx_ref
        if not result.ok:
            record.status = "FAILED"
            record.error = result.reason
            self.state.record(record)
            raise TransferFailedError(result.reason or "transfer was not confirmed")

        record.status = "SUCCESS"
        self.state.record(record)
        logger.debug(
            f"{action} {format_address(sender.address)} -> {format_address(receiver.address)} "
            f"{self.units(amount)}"
        )
        return record

    def pause(self):
        """Inter-hop delay so the next balance read sees the confirmed transfer."""
        if self.token.wait(self.config.hop_delay_seconds):
            raise DispersalCancelled("Run cancelled")
