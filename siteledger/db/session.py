from fastapi import Request

from siteledger.repositories.interface import LedgerStore


def get_store(request: Request) -> LedgerStore:
    """Ledger store bound to the running application."""
    return request.app.state.store
