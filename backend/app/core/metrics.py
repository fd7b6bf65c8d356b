"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Billing webhook metrics
try:
    billing_events_counter = Counter(
        'collab_billing_events_total',
        'Billing webhook events by provider and outcome',
        ['provider', 'outcome']
    )
except ValueError:
    billing_events_counter = REGISTRY._names_to_collectors.get('collab_billing_events_total')

# Membership metrics
try:
    membership_actions_counter = Counter(
        'collab_membership_actions_total',
        'Membership and invitation actions by outcome',
        ['action', 'outcome']
    )
except ValueError:
    membership_actions_counter = REGISTRY._names_to_collectors.get('collab_membership_actions_total')

# Auth metrics
try:
    auth_failures_counter = Counter(
        'collab_auth_failures_total',
        'Rejected bearer tokens and webhook signatures',
        ['reason']
    )
except ValueError:
    auth_failures_counter = REGISTRY._names_to_collectors.get('collab_auth_failures_total')
