"""
Hierarchy Generator
===================

Derives the account tree of a run: one funding account and, per path,
three intermediate accounts plus a landing account. Keys come from
``secrets`` and never leave memory unless explicitly exported.
"""

import secrets
from typing import List

from eth_account import Account

from .fees import HOPS_PER_PATH
from .models import AccountRole, DispersalPath, Run, WalletAccount
from .utils import logger, format_address


def new_account(role: AccountRole, path_index: int = None, hop: int = None) -> WalletAccount:
    """Create an account from 32 cryptographically secure random bytes."""
    private_key = secrets.token_bytes(32)
    account = Account.from_key(private_key)
    return WalletAccount(
        role=role,
        address=account.address,
        private_key=private_key,
        path_index=path_index,
        hop=hop,
    )


def generate(num_paths: int) -> Run:
    """
    Generate a fresh run.

    Args:
        num_paths: Number of landing accounts (one path each)

    Returns:
        Run with 1 + 4 * num_paths accounts and all statuses pending
    """
    if num_paths < 1:
        raise ValueError(f"At least one landing wallet is required, got {num_paths}")

    funding = new_account(AccountRole.FUNDING)
    paths: List[DispersalPath] = []

    for i in range(num_paths):
        intermediates = [
            new_account(AccountRole.INTERMEDIATE, path_index=i, hop=h)
            for h in range(1, HOPS_PER_PATH + 1)
        ]
        landing = new_account(AccountRole.LANDING, path_index=i)
        paths.append(DispersalPath(index=i, intermediates=intermediates, landing=landing))

    logger.info(
        f"Generated run with {num_paths} path(s); funding wallet {format_address(funding.address)}"
    )
    return Run(funding=funding, paths=paths)


def export_landing_keys(run: Run) -> str:
    """Landing account keys, hex-encoded, one per line in path order."""
    return "\n".join(account.private_key.hex() for account in run.landing_accounts)
