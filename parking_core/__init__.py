"""Money-safe fee calculation and cash ledger for a single parking lot."""

__version__ = "0.1.0"
