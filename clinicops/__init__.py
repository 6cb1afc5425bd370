"""Clinic operations API: refill gating, commission ledger, ticket SLAs."""
