"""Resilience core for Solana swaps: RPC endpoint rotation, rate limiting and DEX fallback."""

__version__ = "0.1.0"
