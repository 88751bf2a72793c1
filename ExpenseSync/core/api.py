"""In-memory mock backend.

:class:`MockApi` stands in for a REST expense service during development and in
tests. Besides the REST-like calls used by
:class:`~ExpenseSync.core.strategies.MockApiSyncStrategy` it implements the full
:class:`~ExpenseSync.core.ledger.LedgerAdapter` contract, so the merge pass can run
against it too.
"""
import logging
import threading
import time
from typing import Dict, List, Optional

from .ledger import LedgerAdapter
from .models import Transaction, new_id, sort_transactions
from ..status import status

MOCK_LEDGER_NAME = 'mock-ledger'


class MockApi(LedgerAdapter):
    """Thread-safe in-memory ledger with simulated latency.

    Args:
        latency: Seconds to sleep on every call.
        online: When False every call raises :class:`~ExpenseSync.status.status.ServiceUnavailableException`.
    """

    def __init__(self, latency: float = 0.0, online: bool = True) -> None:
        super().__init__()
        self.latency = latency
        self.online = online
        self.calls: List[str] = []
        self.failing_ids: set = set()

        self._lock = threading.Lock()
        self._records: Dict[str, Transaction] = {}
        self._metadata: Dict[str, str] = {}
        self._ledgers: Dict[str, str] = {}

    def _request(self, name: str, transaction_id: Optional[str] = None) -> None:
        if self.latency:
            time.sleep(self.latency)
        self.calls.append(name)
        if not self.online:
            raise status.ServiceUnavailableException(f'{name}: mock API is offline')
        if transaction_id is not None and transaction_id in self.failing_ids:
            raise status.ServiceUnavailableException(f'{name}: mock failure for "{transaction_id}"')

    # REST-like calls

    def create_expense(self, transaction: Transaction) -> Transaction:
        """Store a new record. Creating an existing id replaces it."""
        self._request('create_expense', transaction.id)
        with self._lock:
            self._records[transaction.id] = transaction.copy(synced=False)
        logging.debug(f'API: Created expense {transaction.id}')
        return transaction.copy(synced=True)

    def update_expense(self, transaction: Transaction) -> Transaction:
        """Replace a record, creating it if absent."""
        self._request('update_expense', transaction.id)
        with self._lock:
            self._records[transaction.id] = transaction.copy(synced=False)
        logging.debug(f'API: Updated expense {transaction.id}')
        return transaction.copy(synced=True)

    def delete_expense(self, transaction_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        self._request('delete_expense', transaction_id)
        with self._lock:
            existed = self._records.pop(transaction_id, None) is not None
        logging.debug(f'API: Deleted expense {transaction_id}')
        return existed

    def get_usable_credential(self) -> Optional[str]:
        """Auth gate for the mock backend: a token while online, None while offline."""
        return 'mock-token' if self.online else None

    # Ledger contract

    def find_or_create_ledger(self) -> str:
        self._request('find_or_create_ledger')
        with self._lock:
            ledger_id = self._ledgers.setdefault(MOCK_LEDGER_NAME, new_id())
        self.open(ledger_id)
        return ledger_id

    def read_all(self) -> List[Transaction]:
        self._request('read_all')
        with self._lock:
            return sort_transactions(t.copy() for t in self._records.values())

    def write_all(self, transactions: List[Transaction]) -> None:
        self._request('write_all')
        with self._lock:
            self._records = {t.id: t.copy(synced=False) for t in transactions}

    def upsert(self, transaction: Transaction) -> None:
        self.update_expense(transaction)

    def remove(self, transaction_id: str) -> None:
        self.delete_expense(transaction_id)

    def get_metadata(self) -> Dict[str, str]:
        self._request('get_metadata')
        with self._lock:
            return dict(self._metadata)

    def set_metadata(self, values: Dict[str, str]) -> None:
        self._request('set_metadata')
        with self._lock:
            self._metadata.update({k: str(v) for k, v in values.items()})

    def records(self) -> Dict[str, Transaction]:
        """Snapshot of the stored records, without counting as a call."""
        with self._lock:
            return {k: v.copy() for k, v in self._records.items()}
