"""Prometheus metrics for the lifecycle manager."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Bot info
BOT_INFO = Info("quarterhour", "Quarterhour lifecycle manager information")

# Order metrics
ORDERS_SUBMITTED = Counter(
    "quarterhour_orders_submitted_total",
    "Orders submitted to the venue",
    ["market", "side", "order_type"],
)

ORDER_FAILURES = Counter(
    "quarterhour_order_failures_total",
    "Orders that failed or were rejected",
    ["market", "operation", "error_type"],
)

ENTRY_FILLS = Counter(
    "quarterhour_entry_fills_total",
    "Maker entry orders detected as filled",
    ["market"],
)

# Exit metrics
EXITS_TRIGGERED = Counter(
    "quarterhour_exits_triggered_total",
    "Exit conditions that fired",
    ["market", "trigger"],
)

FLIP_GUARD_CANCELS = Counter(
    "quarterhour_flip_guard_cancels_total",
    "Pending entry orders cancelled by the flip guard",
    ["market"],
)

POSITIONS_MANUAL_INTERVENTION = Counter(
    "quarterhour_positions_manual_intervention_total",
    "Positions still open after all close retries",
    ["market"],
)

REALIZED_PROFIT_USD = Histogram(
    "quarterhour_realized_profit_usd",
    "Realized profit per closed token group in USD",
    ["market"],
    buckets=[-50, -20, -10, -5, -1, 0, 0.5, 1, 2, 5, 10],
)

# Position metrics
OPEN_POSITIONS = Gauge(
    "quarterhour_open_positions",
    "Open positions in the ledger",
    ["market"],
)

EXPOSURE_USD = Gauge(
    "quarterhour_exposure_usd",
    "Total collateral committed to open positions",
    ["market"],
)

# Circuit breaker metrics
CONSECUTIVE_FAILURES = Gauge(
    "quarterhour_consecutive_failures",
    "Current consecutive order failure count",
    ["market"],
)

CIRCUIT_BREAKER_TRIPS = Counter(
    "quarterhour_circuit_breaker_trips_total",
    "Total circuit breaker trips",
    ["market"],
)

# Redemption metrics
REDEMPTIONS = Counter(
    "quarterhour_redemptions_total",
    "Redemption attempts by outcome",
    ["status"],
)

# Reference price stream metrics
PRICE_STREAM_CONNECTED = Gauge(
    "quarterhour_price_stream_connected",
    "Reference price stream connection status (1=connected)",
)

PRICE_STREAM_RECONNECTS = Counter(
    "quarterhour_price_stream_reconnects_total",
    "Reference price stream reconnection attempts",
)

TICK_ERRORS = Counter(
    "quarterhour_tick_errors_total",
    "Tick iterations that raised",
    ["asset"],
)


def init_metrics(version: str = "0.1.0", assets: str = "") -> None:
    """Initialize bot info metrics.

    Args:
        version: Package version
        assets: Comma-separated assets being traded
    """
    BOT_INFO.info({
        "version": version,
        "assets": assets,
    })
