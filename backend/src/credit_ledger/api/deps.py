"""FastAPI dependencies for the ledger components."""
from fastapi import Request

from credit_ledger.factory import CreditLedger


def get_ledger(request: Request) -> CreditLedger:
    """
    Ledger built by the application lifespan.

    Returns:
        CreditLedger: Components sharing the application's session factory
    """
    return request.app.state.ledger
