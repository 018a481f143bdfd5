"""
Structured logging for Backend Sweeper.

JSON logs with timestamp, event_type, wallet_id and tx hashes.
Use get_logger() in all agent modules for production-ready, aggregation-friendly output.
"""

from backend_sweeper.sweeper_logging.logger import bind_wallet, get_logger

__all__ = ["bind_wallet", "get_logger"]
