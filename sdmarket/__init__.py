"""Synthetic data market: ledger mirror synchronization and quality gating."""

__version__ = "0.1.0"
