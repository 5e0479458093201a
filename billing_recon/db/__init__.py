"""Database package: declarative base and explicit engine lifecycle."""

from billing_recon.db.base import Base, Database, open_database

__all__ = [
    "Base",
    "Database",
    "open_database",
]
