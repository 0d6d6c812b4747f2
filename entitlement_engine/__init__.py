"""
Entitlement reconciliation engine.

Keeps per-account API/RPC tiers and request quotas consistent across
billing webhooks, on-chain deposits and scheduled sweeps, and drives the
external usage-plan associations into agreement with the ledger.
"""

__version__ = "0.1.0"
