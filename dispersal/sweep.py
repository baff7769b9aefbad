"""
Sweep / Withdrawal
==================

Drains every landing wallet and then the funding wallet to one
destination address. Accounts that cannot cover fee plus reserve are
skipped; a failing account never stops the sweep of the others.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from .fees import FeeModel
from .ledger import Ledger, TransferIntent
from .models import Run, TransferRecord, WalletAccount
from .orchestrator import CancellationToken
from .utils import logger, format_address, format_units, sanitize_error_message


def sweep_order(run: Run) -> List[WalletAccount]:
    """Landing wallets in path order, then the funding wallet."""
    return [*run.landing_accounts, run.funding]


def plan_withdrawal(run: Run, ledger: Ledger, fees: FeeModel) -> List[Tuple[WalletAccount, int, int]]:
    """
    Preview a sweep without submitting anything.

    Returns:
        (account, balance, amount that would be withdrawn) per account
    """
    plan = []
    for account in sweep_order(run):
        balance = ledger.get_balance(account.address)
        run.state.note_balance(account.address, balance)
        plan.append((account, balance, fees.transferable(balance)))
    return plan


def withdraw_all(
    run: Run,
    destination: str,
    ledger: Ledger,
    fees: FeeModel,
    hop_delay_seconds: float = 2.0,
    token: Optional[CancellationToken] = None,
) -> List[TransferRecord]:
    """
    Withdraw everything above fee + reserve from the landing and funding wallets.

    Args:
        run: Run whose wallets are swept
        destination: Address receiving the funds
        ledger: Ledger client
        fees: Fee model deciding what each wallet must keep
        hop_delay_seconds: Pause after every confirmed withdrawal
        token: Optional cancellation token checked before each wallet

    Returns:
        One TransferRecord per wallet (SUCCESS, FAILED or SKIPPED)
    """
    if not ledger.validate_address(destination):
        raise ValueError(f"Invalid withdrawal address: {destination}")

    token = token or CancellationToken()
    state = run.state
    records: List[TransferRecord] = []

    state.set_message("Withdrawing from landing wallets and funding wallet...")
    logger.info(f"Withdrawing all funds to {format_address(destination)}")

    for account in sweep_order(run):
        if token.cancelled:
            logger.warning("Withdrawal cancelled; remaining wallets were not swept")
            break

        record = TransferRecord(
            timestamp=datetime.now().isoformat(),
            action="WITHDRAW",
            path_index=account.path_index,
            hop=None,
            from_address=account.address,
            to_address=destination,
        )

        try:
            balance = ledger.get_balance(account.address)
        except Exception as e:
            record.status = "FAILED"
            record.error = sanitize_error_message(e)
            _finish(state, records, record, f"Error reading balance of {account.label}: {record.error}")
            continue
        state.note_balance(account.address, balance)

        if not fees.clears_reserve(balance):
            record.status = "SKIPPED"
            record.error = "balance does not cover fee and reserve"
            _finish(
                state, records, record,
                f"Skipping {account.label} - insufficient balance: {format_units(balance, fees.decimals)}"
            )
            continue

        amount = fees.transferable(balance)
        record.amount = amount

        try:
            result = ledger.submit_and_confirm(TransferIntent(account.address, destination, amount), [account])
        except Exception as e:
            record.status = "FAILED"
            record.error = sanitize_error_message(e)
        else:
            record.tx_ref = result.tx_ref
            record.status = "SUCCESS" if result.ok else "FAILED"
            record.error = result.reason

        if record.status == "FAILED":
            _finish(state, records, record, f"Error withdrawing from {account.label}: {record.error}")
            continue

        _finish(
            state, records, record,
            f"Withdrawn {format_units(amount, fees.decimals)} from {account.label}."
        )
        token.wait(hop_delay_seconds)

    success_count = sum(1 for r in records if r.status == "SUCCESS")
    state.set_message(f"Withdrawal complete! {success_count}/{len(records)} wallet(s) withdrawn.")
    logger.info(state.last_message)
    return records


def _finish(state, records: List[TransferRecord], record: TransferRecord, message: str):
    records.append(record)
    state.record(record)
    state.set_message(message)
    if record.status == "FAILED":
        logger.error(message)
    elif record.status == "SKIPPED":
        logger.warning(message)
    else:
        logger.info(message)
