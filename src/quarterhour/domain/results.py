"""Result objects returned by lifecycle operations.

Hosts react to these instead of registering callbacks: every entry, exit,
close and redemption pass reports exactly what it did.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .market import Direction


class EntryAction(str, Enum):
    SKIPPED = "skipped"
    PLACED = "placed"
    FAILED = "failed"


@dataclass
class EntryResult:
    action: EntryAction
    reason: str = ""
    direction: Optional[Direction] = None
    token_id: Optional[str] = None
    order_id: Optional[str] = None
    limit_price: Optional[float] = None
    shares: Optional[float] = None
    error: Optional[str] = None

    @property
    def placed(self) -> bool:
        return self.action == EntryAction.PLACED

    @classmethod
    def skipped(cls, reason: str) -> "EntryResult":
        return cls(action=EntryAction.SKIPPED, reason=reason)


class ExitTrigger(str, Enum):
    FLIP_GUARD_PENDING = "flip_guard_pending"
    FLIP_GUARD_FILLED = "flip_guard_filled"
    PROFIT_TARGET = "profit_target"
    STOP_LOSS = "stop_loss"
    MANUAL = "manual"


@dataclass
class CloseReport:
    """Outcome of closing a group of positions.

    Only ids in ``closed_ids`` were removed from the ledger. Maker exits
    leave their positions open and list the resting orders in
    ``resting_order_ids`` instead.
    """

    reason: str
    closed_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)  # token_id -> error
    order_ids: List[str] = field(default_factory=list)
    resting_order_ids: List[str] = field(default_factory=list)
    realized_profit: float = 0.0
    tokens: List[str] = field(default_factory=list)  # tokens attempted

    @property
    def success(self) -> bool:
        return not self.failed_ids and not self.errors

    def merge(self, other: "CloseReport") -> None:
        """Fold a retry pass into this report.

        The retry's outcome replaces this report's outcome for every token
        it attempted; tokens it skipped keep their original errors.
        """
        for pid in other.closed_ids:
            if pid not in self.closed_ids:
                self.closed_ids.append(pid)
        failed = []
        for pid in self.failed_ids + other.failed_ids:
            if pid not in self.closed_ids and pid not in failed:
                failed.append(pid)
        self.failed_ids = failed
        errors = {t: e for t, e in self.errors.items() if t not in other.tokens}
        errors.update(other.errors)
        self.errors = errors
        for token in other.tokens:
            if token not in self.tokens:
                self.tokens.append(token)
        self.order_ids.extend(other.order_ids)
        self.resting_order_ids.extend(other.resting_order_ids)
        self.realized_profit += other.realized_profit


@dataclass
class ExitResult:
    trigger: Optional[ExitTrigger] = None
    reason: str = ""
    report: Optional[CloseReport] = None
    cancelled_order_ids: List[str] = field(default_factory=list)

    @property
    def acted(self) -> bool:
        return self.trigger is not None

    @classmethod
    def none(cls, reason: str = "") -> "ExitResult":
        return cls(reason=reason)


@dataclass
class TickResult:
    """Everything one ``on_tick`` call did, in order."""

    entry_fills: List[str] = field(default_factory=list)  # new position ids
    exit_fills: List[str] = field(default_factory=list)  # removed position ids
    exit: ExitResult = field(default_factory=ExitResult)
    entry: Optional[EntryResult] = None


@dataclass
class RedemptionReport:
    checked_markets: List[str] = field(default_factory=list)
    unresolved_markets: List[str] = field(default_factory=list)
    redeemed_markets: List[str] = field(default_factory=list)
    redeemed_position_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)  # market_id -> error
