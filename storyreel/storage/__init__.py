"""Persistence, media storage, credentials and usage ledger."""
