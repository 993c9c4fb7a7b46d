"""School platform billing backend.

Recurring per-student platform subscription billing for tenant
organizations: anniversary scheduling, Stripe reconciliation, payment
escalation and account lifecycle gating.
"""

__version__ = '1.0.0'
