"""Per-store credit ledger: pools, deduction, rollover, subscription sync and overage."""
