"""Audit ledger, sinks and compliance reporting."""
