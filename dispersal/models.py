"""
Run data model: accounts, paths, per-hop status and the observable run state.
"""

from datetime import datetime
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .fees import HOPS_PER_PATH


class AccountRole(Enum):
    FUNDING = "funding"
    INTERMEDIATE = "intermediate"
    LANDING = "landing"


class HopStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class RunStatus(Enum):
    AWAITING_FUNDING = "awaiting_funding"
    SEEDING = "seeding"
    RELAYING = "relaying"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Status slots of a path, in transfer order
SEED_SLOT = 0
LANDING_SLOT = HOPS_PER_PATH + 1


@dataclass(frozen=True)
class WalletAccount:
    """An address plus the raw 32-byte key that signs for it."""
    role: AccountRole
    address: str
    private_key: bytes = field(repr=False)
    path_index: Optional[int] = None
    hop: Optional[int] = None             # 1-based position for intermediates

    @property
    def signer(self) -> LocalAccount:
        return Account.from_key(self.private_key)

    @property
    def label(self) -> str:
        if self.role == AccountRole.FUNDING:
            return "Funding Wallet"
        if self.role == AccountRole.LANDING:
            return f"Landing Wallet {self.path_index + 1}"
        return f"Intermediate {self.hop} for Landing Wallet {self.path_index + 1}"


@dataclass(frozen=True)
class DispersalPath:
    """funding -> intermediates[0..2] -> landing"""
    index: int
    intermediates: List[WalletAccount]
    landing: WalletAccount

    def __post_init__(self):
        if len(self.intermediates) != HOPS_PER_PATH:
            raise ValueError(
                f"Path {self.index} needs exactly {HOPS_PER_PATH} intermediates, "
                f"got {len(self.intermediates)}"
            )

    def hop_target(self, hop: int) -> WalletAccount:
        """Receiver of the transfer sent by intermediate ``hop`` (1-based)."""
        if hop == HOPS_PER_PATH:
            return self.landing
        return self.intermediates[hop]

    @property
    def accounts(self) -> List[WalletAccount]:
        return [*self.intermediates, self.landing]


@dataclass
class TransferRecord:
    """Audit record for one transfer attempt."""
    timestamp: str
    action: str                            # SEED, RELAY, WITHDRAW
    path_index: Optional[int]              # None for the funding account
    hop: Optional[int]
    from_address: str
    to_address: str
    amount: int = 0
    tx_ref: Optional[str] = None
    status: str = "PENDING"                # PENDING, SUCCESS, FAILED, SKIPPED
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StatusSnapshot:
    """Immutable view of a run handed to observers."""
    run_status: RunStatus
    hop_statuses: Dict[str, HopStatus]
    last_message: str
    balances: Dict[str, int]
    error: Optional[str]
    taken_at: str


StatusListener = Callable[[StatusSnapshot], None]


def slot_key(path_index: int, slot: int) -> str:
    """Status key for a path slot, e.g. ``seed-0``, ``intermediate2-0``, ``landing-0``."""
    if slot == SEED_SLOT:
        return f"seed-{path_index}"
    if slot == LANDING_SLOT:
        return f"landing-{path_index}"
    return f"intermediate{slot}-{path_index}"


class RunState:
    """
    Mutable state of one run.

    Only the orchestrator and the sweep routine write to it; every change
    is pushed to subscribers as a StatusSnapshot.
    """

    def __init__(self, num_paths: int):
        self.run_status = RunStatus.AWAITING_FUNDING
        self.funding_status = HopStatus.PENDING
        self.paths: List[List[HopStatus]] = [
            [HopStatus.PENDING] * (LANDING_SLOT + 1) for _ in range(num_paths)
        ]
        self.last_message = ""
        self.error: Optional[str] = None
        self.balances: Dict[str, int] = {}
        self.records: List[TransferRecord] = []
        self._listeners: List[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> StatusSnapshot:
        hop_statuses = {"funding": self.funding_status}
        for path_index, slots in enumerate(self.paths):
            for slot, status in enumerate(slots):
                hop_statuses[slot_key(path_index, slot)] = status
        return StatusSnapshot(
            run_status=self.run_status,
            hop_statuses=hop_statuses,
            last_message=self.last_message,
            balances=dict(self.balances),
            error=self.error,
            taken_at=datetime.now().isoformat(),
        )

    def _emit(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def set_message(self, message: str):
        self.last_message = message
        self._emit()

    def set_run_status(self, status: RunStatus, message: Optional[str] = None):
        self.run_status = status
        if message is not None:
            self.last_message = message
        self._emit()

    def fail(self, message: str):
        self.error = message
        self.set_run_status(RunStatus.FAILED, message)

    def set_funding_status(self, status: HopStatus, message: Optional[str] = None):
        self.funding_status = status
        if message is not None:
            self.last_message = message
        self._emit()

    def slot_status(self, path_index: int, slot: int) -> HopStatus:
        return self.paths[path_index][slot]

    def set_slot(self, path_index: int, slot: int, status: HopStatus, message: Optional[str] = None):
        """Update one path slot, refusing to start a slot whose predecessor is unfinished."""
        if status == HopStatus.IN_PROGRESS:
            previous = self.funding_status if slot == SEED_SLOT else self.paths[path_index][slot - 1]
            if previous != HopStatus.COMPLETED:
                raise ValueError(
                    f"Cannot start {slot_key(path_index, slot)} while its predecessor is {previous.value}"
                )
        self.paths[path_index][slot] = status
        if message is not None:
            self.last_message = message
        self._emit()

    def path_completed(self, path_index: int) -> bool:
        return self.paths[path_index][LANDING_SLOT] == HopStatus.COMPLETED

    def path_failed(self, path_index: int) -> bool:
        return HopStatus.ERROR in self.paths[path_index]

    def note_balance(self, address: str, balance: int):
        self.balances[address] = balance

    def record(self, record: TransferRecord):
        self.records.append(record)

    def get_audit_trail(self, limit: int = 100) -> List[TransferRecord]:
        return self.records[-limit:]


@dataclass
class Run:
    """The shared funding account, its paths and their live state."""
    funding: WalletAccount
    paths: List[DispersalPath]
    state: RunState = None

    def __post_init__(self):
        if self.state is None:
            self.state = RunState(len(self.paths))

    @property
    def landing_accounts(self) -> List[WalletAccount]:
        return [path.landing for path in self.paths]

    def accounts(self) -> Iterator[WalletAccount]:
        yield self.funding
        for path in self.paths:
            yield from path.accounts

    @property
    def intermediate_count(self) -> int:
        return sum(len(path.intermediates) for path in self.paths)
