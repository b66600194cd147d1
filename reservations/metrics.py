"""Prometheus counters for slot transitions (exported through django-prometheus' /metrics)."""
from prometheus_client import Counter

TRANSITIONS = Counter(
    'reservations_transitions_total',
    'Successful slot state transitions',
    ['operation'],
)
CONFLICTS = Counter(
    'reservations_conflicts_total',
    'Slot operations rejected because the slot was not in the expected state',
    ['operation'],
)
SWEPT_HOLDS = Counter(
    'reservations_swept_holds_total',
    'Expired holds reclaimed by the sweeper',
)
WAITLIST_OFFERS = Counter(
    'reservations_waitlist_offers_total',
    'Freed slots held for a waitlist candidate',
)
