"""
Core utilities: exception taxonomy and keyed locks.

Provides the error classes shared by the registry, ledger, chain client,
agent worker, and API server.
"""
