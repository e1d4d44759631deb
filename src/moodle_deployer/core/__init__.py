"""Core deployment machinery: plan, ledger, orchestration and cleanup."""
