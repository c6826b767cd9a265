"""MemeSync server: sync engine, shares, quotas and blob access."""
