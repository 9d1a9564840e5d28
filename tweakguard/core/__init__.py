"""Core engine: stores, backups, mutation, tiers and rollback."""
