"""
Backend Sweeper: custodial deposit-sweep and gas-orchestration engine.

Runs alongside the platform to watch per-user deposit wallets, fund them with
gas from the master wallet, consolidate token balances into the hot wallet,
and settle outbound withdrawals. Modular layout with clear separation between
registry/ledger, chain access, the sweep worker, and the admin API server.
"""

__version__ = "0.1.0"
