"""
Interledger pay-per-request integration module.

This module gates API requests behind micropayments received over an
Interledger PSK payment channel and credited to per-token balances.

Key components:
- ledger: Per-token balance ledger (credit/debit/peek)
- psk: PSK challenge (destination + shared secret) generation
- receiver: Incoming payment handling and crediting
- gate: Payment decisions for announce and enforce routes
- paywall: Ties ledger, receiver and transport together
- middleware: FastAPI middleware applying the paywall to priced routes
- rpc: Bearer-authenticated passthrough to the transport
- transport: Transport contract and HTTP connector transport
- audit: Payment audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
