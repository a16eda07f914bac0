"""
Storage layer for Renewal Guard.

SQLite persistence for billing records and the append-only audit log.
"""
