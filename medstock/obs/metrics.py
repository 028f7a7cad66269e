# medstock/obs/metrics.py
from prometheus_client import Counter, Histogram

reservations_total = Counter(
    "medstock_reservations_total", "Reserve attempts by outcome", ["outcome"]
)
reservation_transitions_total = Counter(
    "medstock_reservation_transitions_total",
    "Terminal reservation transitions",
    ["status"],
)
stock_movements_total = Counter(
    "medstock_stock_movements_total", "Movement rows appended", ["movement_type"]
)
sweeper_runs_total = Counter("medstock_sweeper_runs_total", "Sweeper ticks", ["result"])
sweeper_expired_total = Counter(
    "medstock_sweeper_expired_total", "Reservations expired by the sweeper"
)
notifications_failed_total = Counter(
    "medstock_notifications_failed_total", "Event deliveries that raised", ["event_type"]
)
lock_wait_seconds = Histogram(
    "medstock_item_lock_wait_seconds", "Time spent acquiring item locks"
)
