"""
Wallet Dispersal Engine
=======================
Moves one deposit through chains of intermediate wallets to a set of
landing wallets, then sweeps every balance to a single address.

Features:
- Fresh funding, intermediate and landing wallets per run
- Fee and reserve aware amount allocation with randomized per-path amounts
- Sequential hop-by-hop transfers with per-path failure isolation
- Observable run state and cancellable funding wait
- Withdrawal sweep of landing and funding wallets
"""

__version__ = "1.0.0"

from .config import DispersalConfig, ConfigManager
from .fees import FeeModel, HOPS_PER_PATH
from .hierarchy import generate, export_landing_keys
from .allocator import allocate
from .ledger import Ledger, SimulatedLedger, TransferIntent, TransferResult, Web3Ledger
from .models import HopStatus, Run, RunState, RunStatus, StatusSnapshot, TransferRecord, WalletAccount
from .orchestrator import CancellationToken, DispersalOrchestrator
from .sweep import plan_withdrawal, withdraw_all
from .utils import (
    logger,
    DispersalError,
    AllocationImpossibleError,
    InsufficientFundsError,
    HopInsufficientBalanceError,
    TransferFailedError,
    DispersalCancelled,
)

__all__ = [
    "DispersalConfig",
    "ConfigManager",
    "FeeModel",
    "HOPS_PER_PATH",
    "generate",
    "export_landing_keys",
    "allocate",
    "Ledger",
    "SimulatedLedger",
    "TransferIntent",
    "TransferResult",
    "Web3Ledger",
    "HopStatus",
    "Run",
    "RunState",
    "RunStatus",
    "StatusSnapshot",
    "TransferRecord",
    "WalletAccount",
    "CancellationToken",
    "DispersalOrchestrator",
    "plan_withdrawal",
    "withdraw_all",
    "logger",
    "DispersalError",
    "AllocationImpossibleError",
    "InsufficientFundsError",
    "HopInsufficientBalanceError",
    "TransferFailedError",
    "DispersalCancelled",
]
