"""Wallet service: wallets, transaction records and rollbacks in SQLite, served over gRPC."""

__version__ = "0.1.0"