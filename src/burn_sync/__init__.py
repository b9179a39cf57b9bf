"""Burn Sync - Solana burn-event ingestion and tokenomics ledger sync."""

__version__ = "0.1.0"
