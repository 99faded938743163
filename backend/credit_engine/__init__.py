"""
Credit Engine
Credit authorization and entitlement for paid AI generation

This module provides:
- Credit ledger with atomic deductions and idempotent credits
- Holder resolution from on-chain balances, with a shared TTL cache
- Canonical per-model pricing
- Once-per-UTC-day holder grants
- Pay-per-call payments that bypass the ledger
- Tiered rate limiting with local fallback

Collections used:
- accounts: Credit balances (integer tenths)
- credit_ledger: Append-only transaction log, unique per (reference, reason)
- pay_per_call_settlements: Settlement claims, unique per proof
- credit_engine_meta: Init version stamp
"""

__version__ = "1.0.0"
