"""Command-line interface for passkey multi-chain accounts."""
