"""Position ledger: the single owner of open positions."""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import structlog

from ..domain.position import Position

log = structlog.get_logger()


@dataclass
class TokenGroup:
    """Positions in one token, closed together with a single order."""

    token_id: str
    positions: List[Position] = field(default_factory=list)

    @property
    def shares(self) -> float:
        return sum(p.open_shares for p in self.positions)

    @property
    def size(self) -> float:
        return sum(p.size for p in self.positions)

    @property
    def position_ids(self) -> List[str]:
        return [p.id for p in self.positions]

    @property
    def cost_basis(self) -> float:
        """Collateral still committed to the open shares of this group."""
        total = 0.0
        for p in self.positions:
            full = p.shares
            if full <= 0:
                continue
            total += p.size * min(1.0, p.open_shares / full)
        return total


def group_by_token(positions: Iterable[Position]) -> Dict[str, TokenGroup]:
    """Aggregate positions by token id, preserving first-seen order."""
    groups: Dict[str, TokenGroup] = OrderedDict()
    for position in positions:
        group = groups.get(position.token_id)
        if group is None:
            group = groups[position.token_id] = TokenGroup(token_id=position.token_id)
        group.positions.append(position)
    return groups


class PositionLedger:
    """In-memory store of open positions, keyed by position id.

    Removal is membership-filtered: removing ids that are already gone is a
    no-op, so a close and a redemption racing on the same position cannot
    double-remove it.
    """

    def __init__(self):
        self._positions: Dict[str, Position] = OrderedDict()

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def add(self, position: Position) -> None:
        self._positions[position.id] = position
        log.info(
            "Position opened",
            position_id=position.id,
            market=position.market_id,
            direction=position.direction.value,
            size=round(position.size, 4),
            entry_price=round(position.entry_price, 2),
        )

    def get(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def positions(self, market_id: Optional[str] = None) -> List[Position]:
        if market_id is None:
            return list(self._positions.values())
        return [p for p in self._positions.values() if p.market_id == market_id]

    def remove_by_ids(self, position_ids: Iterable[str]) -> List[str]:
        """Remove the given positions. Returns the ids actually removed."""
        removed = []
        for position_id in dict.fromkeys(position_ids):
            if self._positions.pop(position_id, None) is not None:
                removed.append(position_id)
        if removed:
            log.info("Positions removed", position_ids=removed, remaining=len(self._positions))
        return removed

    def total_exposure(self, market_id: Optional[str] = None) -> float:
        return sum(p.size for p in self.positions(market_id))

    def groups(self, market_id: Optional[str] = None) -> Dict[str, TokenGroup]:
        return group_by_token(self.positions(market_id))

    def clear(self) -> None:
        self._positions.clear()
