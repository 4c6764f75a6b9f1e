"""Keyshop inventory: reservation ledger for license keys and account slots."""

__version__ = "1.0.0"
