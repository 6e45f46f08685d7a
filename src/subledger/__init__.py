"""
Subscription ledger.

Subscription lifecycle state machine for a multi-tenant SaaS billing backend:
create, renew, upgrade, downgrade, pause, resume and cancel with proration,
churn-risk scoring, and a renewal/dunning scanner for failed payments.
"""

__version__ = "1.0.0"
