"""Crash-safe audit trail: per-attempt NDJSON logs and the session metrics document."""
