"""Position lifecycle: entry, exit, close and the per-asset manager."""

from .closer import PositionCloser
from .context import LifecycleContext
from .entry import EntryController, entry_order_size
from .exit import ExitController
from .flags import InFlightFlag
from .ledger import PositionLedger, TokenGroup, group_by_token
from .manager import LifecycleManager
from .multi_asset import SUPPORTED_ASSETS, MultiAssetLifecycle

__all__ = [
    "EntryController",
    "ExitController",
    "InFlightFlag",
    "LifecycleContext",
    "LifecycleManager",
    "MultiAssetLifecycle",
    "PositionCloser",
    "PositionLedger",
    "SUPPORTED_ASSETS",
    "TokenGroup",
    "entry_order_size",
    "group_by_token",
]
