"""Credit ledger: FIFO credit batches with expiration, alerts and balances."""

__version__ = "1.0.0"
