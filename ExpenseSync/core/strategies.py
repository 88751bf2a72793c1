"""Sync strategies: how one outbox item reaches a remote backend.

Every strategy gives create and update upsert semantics and treats deleting an
absent record as success, so applying the same item twice leaves the remote as if
it was applied once. ``apply_item`` returns nothing on success and raises on failure.
"""
import abc
import logging

from .api import MockApi
from .ledger import LedgerAdapter
from .models import Action, OutboxItem


class SyncStrategy(abc.ABC):
    """Applies a single outbox item to a remote backend."""

    @abc.abstractmethod
    def apply_item(self, item: OutboxItem) -> None:
        """Apply ``item`` remotely.

        Raises:
            Exception: Any failure. The item stays queued and is retried later.
        """


class SheetsSyncStrategy(SyncStrategy):
    """Applies items through a ledger's single-row operations."""

    def __init__(self, ledger: LedgerAdapter) -> None:
        self.ledger = ledger

    def apply_item(self, item: OutboxItem) -> None:
        if item.action == Action.Delete:
            self.ledger.remove(item.transaction_id)
        else:
            self.ledger.upsert(item.payload)
        logging.debug(f'Applied {item.action} for "{item.transaction_id}" to the ledger.')


class MockApiSyncStrategy(SyncStrategy):
    """Applies items through the mock REST calls."""

    def __init__(self, api: MockApi) -> None:
        self.api = api

    def apply_item(self, item: OutboxItem) -> None:
        if item.action == Action.Create:
            self.api.create_expense(item.payload)
        elif item.action == Action.Update:
            self.api.update_expense(item.payload)
        else:
            self.api.delete_expense(item.transaction_id)


def get_strategy(backend: str, ledger: LedgerAdapter) -> SyncStrategy:
    """Return the strategy for the configured backend.

    Args:
        backend: ``'sheets'`` or ``'mock'``.
        ledger: The ledger the coordinator merges against.

    Raises:
        ValueError: If the backend is unknown or does not match the ledger.
    """
    if backend == 'mock':
        if not isinstance(ledger, MockApi):
            raise ValueError('The mock backend needs a MockApi ledger.')
        return MockApiSyncStrategy(ledger)
    if backend == 'sheets':
        return SheetsSyncStrategy(ledger)
    raise ValueError(f'Unknown sync backend: "{backend}"')
