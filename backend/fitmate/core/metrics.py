"""Prometheus metrics for membership payments"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not register the same collector twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


checkout_sessions_counter = _counter(
    'fitmate_checkout_sessions_total',
    'Total number of membership checkout attempts',
    ['status']
)

reconciliations_counter = _counter(
    'fitmate_reconciliations_total',
    'Total number of payment reconciliations',
    ['source', 'outcome']
)

role_upgrades_counter = _counter(
    'fitmate_role_upgrades_total',
    'Total number of membership role upgrades applied',
    ['role']
)

settlement_mismatch_counter = _counter(
    'fitmate_settlement_mismatches_total',
    'Gateway-reported values that differ from the plan registry',
    ['field']
)

webhook_events_counter = _counter(
    'fitmate_webhook_events_total',
    'Total number of gateway webhook deliveries',
    ['event_type', 'status']
)
