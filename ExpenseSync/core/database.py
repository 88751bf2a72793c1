"""
Local SQLite record store and sync outbox.

The store is the local source of truth. It holds the transactions, the durable FIFO
queue of mutations that still have to reach the remote ledger, and a single metadata
row with the sync bookkeeping. Every write is committed before the call returns.

A metadata table created by an older version is migrated in place; local data is
never dropped to repair the schema.
"""

import contextlib
import enum
import logging
import pathlib
import sqlite3
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Union

import pandas as pd
from PySide6 import QtCore

from .models import Action, OutboxItem, SyncMetadata, Transaction, sort_transactions, to_decimal
from ..status import status

TRANSACTION_SCHEMA: Dict[str, str] = {
    'id': 'TEXT PRIMARY KEY',
    'amount': 'TEXT NOT NULL',
    'description': 'TEXT',
    'category': 'TEXT',
    'date': 'TEXT NOT NULL',
    'kind': 'TEXT NOT NULL',
    'cleared': 'INTEGER DEFAULT 0',
    'updated_at': 'INTEGER NOT NULL',
    'created_at': 'INTEGER',
    'synced': 'INTEGER DEFAULT 0',
}

QUEUE_SCHEMA: Dict[str, str] = {
    'seq': 'INTEGER PRIMARY KEY AUTOINCREMENT',
    'item_id': 'TEXT NOT NULL UNIQUE',
    'action': 'TEXT NOT NULL',
    'transaction_id': 'TEXT NOT NULL',
    'item': 'TEXT NOT NULL',
    'timestamp': 'INTEGER',
}

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'remote_ledger_id': 'TEXT',
    'last_sync_timestamp': 'INTEGER',
    'auto_sync_enabled': 'INTEGER',
    'auto_sync_interval_minutes': 'INTEGER',
    'last_sync_error': 'TEXT',
}

TRANSACTION_COLUMNS: List[str] = list(TRANSACTION_SCHEMA.keys())
METADATA_FIELDS: List[str] = [k for k in META_SCHEMA if k != 'meta_id']


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Transactions = 'transactions'
    Queue = 'sync_queue'


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row['id'],
        amount=row['amount'],
        description=row['description'],
        category=row['category'],
        date=row['date'],
        kind=row['kind'],
        cleared=bool(row['cleared']),
        updated_at=row['updated_at'],
        created_at=row['created_at'],
        synced=bool(row['synced']),
    )


def _transaction_to_row(transaction: Transaction) -> tuple:
    d = transaction.to_dict()
    return (
        d['id'],
        d['amount'],
        d['description'],
        d['category'],
        d['date'],
        d['kind'],
        int(d['cleared']),
        d['updated_at'],
        d['created_at'],
        int(d['synced']),
    )


class RecordStore(QtCore.QObject):
    """Durable local storage for transactions, the sync outbox and sync metadata.

    All methods are safe to call from the main thread and from sync worker threads.

    Args:
        db_path: Path of the SQLite database file.
        auto_sync_enabled: Default written to a freshly created metadata row.
        auto_sync_interval_minutes: Default written to a freshly created metadata row.
    """
    #: Emitted after local transactions changed.
    dataChanged = QtCore.Signal()

    def __init__(self,
                 db_path: Union[str, pathlib.Path],
                 auto_sync_enabled: bool = True,
                 auto_sync_interval_minutes: int = 5,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.db_path = pathlib.Path(db_path)
        self._lock = threading.RLock()
        self._defaults = SyncMetadata(
            auto_sync_enabled=auto_sync_enabled,
            auto_sync_interval_minutes=auto_sync_interval_minutes,
        )
        self._initialize_schema()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work is committed on success and rolled back on error.

        Raises:
            status.StoreInvalidException: On any SQLite error.
        """
        with self._lock:
            conn: Optional[sqlite3.Connection] = None
            try:
                conn = self.connection()
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                logging.error(f'SQLite error in record store: {e}')
                if conn:
                    conn.rollback()
                raise status.StoreInvalidException(str(e)) from e
            finally:
                if conn:
                    conn.close()

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table: Table) -> set:
        return {row[1] for row in conn.execute(f'PRAGMA table_info({table.value})').fetchall()}

    def _initialize_schema(self) -> None:
        """Create missing tables, add missing columns, and make sure the metadata row exists."""
        logging.debug(f'Initializing record store at "{self.db_path}"')
        with self._transaction() as conn:
            for table, schema in (
                    (Table.Transactions, TRANSACTION_SCHEMA),
                    (Table.Queue, QUEUE_SCHEMA),
                    (Table.Meta, META_SCHEMA),
            ):
                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in schema.items())
                conn.execute(f'CREATE TABLE IF NOT EXISTS {table.value} ({cols_sql})')

                existing = self._table_columns(conn, table)
                for name, typedef in schema.items():
                    if name in existing:
                        continue
                    logging.warning(f'Table "{table.value}" is missing column "{name}", migrating.')
                    # SQLite cannot add key or unique columns after the fact
                    typedef = typedef.replace('PRIMARY KEY', '').replace('AUTOINCREMENT', '')
                    typedef = typedef.replace('NOT NULL', '').replace('UNIQUE', '').strip()
                    conn.execute(f'ALTER TABLE {table.value} ADD COLUMN "{name}" {typedef}')

            conn.execute(
                f'CREATE INDEX IF NOT EXISTS idx_transactions_date ON {Table.Transactions.value} (date)'
            )
            conn.execute(
                f'INSERT OR IGNORE INTO {Table.Meta.value} '
                f'(meta_id, auto_sync_enabled, auto_sync_interval_minutes) VALUES (1, ?, ?)',
                (int(self._defaults.auto_sync_enabled), self._defaults.auto_sync_interval_minutes)
            )

    # Transactions

    @staticmethod
    def _put_in_conn(conn: sqlite3.Connection, transaction: Transaction) -> None:
        placeholders = ', '.join(['?'] * len(TRANSACTION_COLUMNS))
        columns = ', '.join(f'"{c}"' for c in TRANSACTION_COLUMNS)
        conn.execute(
            f'INSERT OR REPLACE INTO {Table.Transactions.value} ({columns}) VALUES ({placeholders})',
            _transaction_to_row(transaction)
        )

    def put(self, transaction: Transaction) -> None:
        """Insert or replace a transaction by id."""
        with self._transaction() as conn:
            self._put_in_conn(conn, transaction)
        self.dataChanged.emit()

    def put_many(self, transactions: Iterable[Transaction]) -> None:
        """Insert or replace several transactions in one database transaction."""
        transactions = list(transactions)
        if not transactions:
            return
        with self._transaction() as conn:
            for transaction in transactions:
                self._put_in_conn(conn, transaction)
        logging.debug(f'Stored {len(transactions)} transactions.')
        self.dataChanged.emit()

    def delete(self, transaction_id: str) -> None:
        """Remove a transaction. Removing an absent id is a no-op."""
        with self._transaction() as conn:
            conn.execute(f'DELETE FROM {Table.Transactions.value} WHERE id = ?', (transaction_id,))
        self.dataChanged.emit()

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Return the transaction with the given id, or None."""
        with self._transaction() as conn:
            row = conn.execute(
                f'SELECT * FROM {Table.Transactions.value} WHERE id = ?', (transaction_id,)
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def list(self) -> List[Transaction]:
        """Return all transactions by date descending, newest created/updated first within a day."""
        with self._transaction() as conn:
            rows = conn.execute(f'SELECT * FROM {Table.Transactions.value}').fetchall()
        return sort_transactions(_row_to_transaction(r) for r in rows)

    def mark_synced(self, transaction_ids: Iterable[str]) -> int:
        """Flag transactions as synced.

        Ids that still have pending outbox items stay unsynced.

        Returns:
            int: The number of rows flagged.
        """
        ids = list(transaction_ids)
        if not ids:
            return 0
        with self._transaction() as conn:
            cursor = conn.executemany(
                f'UPDATE {Table.Transactions.value} SET synced = 1 WHERE id = ? AND id NOT IN '
                f'(SELECT transaction_id FROM {Table.Queue.value})',
                [(i,) for i in ids]
            )
            count = cursor.rowcount
        return count

    def data(self) -> pd.DataFrame:
        """Load the transactions into a pandas DataFrame, in canonical order.

        Returns:
            pandas.DataFrame: One row per transaction. Empty when the store is empty.
        """
        with self._transaction() as conn:
            df = pd.read_sql_query(f'SELECT * FROM {Table.Transactions.value}', conn)
        if df.empty:
            return pd.DataFrame(columns=TRANSACTION_COLUMNS)

        df['amount'] = df['amount'].map(to_decimal)
        df['date'] = pd.to_datetime(df['date'], format='%Y-%m-%d')
        df['cleared'] = df['cleared'].astype(bool)
        df['synced'] = df['synced'].astype(bool)
        df['_order'] = df['created_at'].fillna(df['updated_at'])
        df = df.sort_values(['date', '_order'], ascending=False).drop(columns='_order')
        return df.reset_index(drop=True)

    # Outbox

    @staticmethod
    def _enqueue_in_conn(conn: sqlite3.Connection, item: OutboxItem) -> None:
        conn.execute(
            f'INSERT INTO {Table.Queue.value} (item_id, action, transaction_id, item, timestamp) '
            f'VALUES (?, ?, ?, ?, ?)',
            (item.id, item.action.value, item.transaction_id, item.to_json(), item.timestamp)
        )

    def enqueue(self, item: OutboxItem) -> None:
        """Append an item to the outbox."""
        with self._transaction() as conn:
            self._enqueue_in_conn(conn, item)
        logging.debug(f'Queued {item.action} for "{item.transaction_id}" ({item.id}).')

    def record_mutation(self, item: OutboxItem) -> None:
        """Apply a mutation locally and queue it for the remote, as one unit.

        Create and update items upsert their payload as unsynced; delete items remove
        the local record. Either both writes are committed or neither is.
        """
        with self._transaction() as conn:
            if item.action == Action.Delete:
                conn.execute(
                    f'DELETE FROM {Table.Transactions.value} WHERE id = ?', (item.transaction_id,)
                )
            else:
                self._put_in_conn(conn, item.payload.copy(synced=False))
            self._enqueue_in_conn(conn, item)
        logging.debug(f'Recorded {item.action} for "{item.transaction_id}".')
        self.dataChanged.emit()

    def list_queue(self) -> List[OutboxItem]:
        """Return the outbox items in insertion order.

        Rows that cannot be decoded are logged and left in place.
        """
        with self._transaction() as conn:
            rows = conn.execute(f'SELECT item_id, item FROM {Table.Queue.value} ORDER BY seq').fetchall()

        items = []
        for row in rows:
            try:
                items.append(OutboxItem.from_json(row['item']))
            except ValueError as e:
                logging.warning(f'Skipping unreadable outbox item "{row["item_id"]}": {e}')
        return items

    def dequeue(self, item_id: str) -> None:
        """Remove an item from the outbox. Removing an absent item is a no-op."""
        with self._transaction() as conn:
            conn.execute(f'DELETE FROM {Table.Queue.value} WHERE item_id = ?', (item_id,))

    def clear_queue(self) -> None:
        """Remove every item from the outbox."""
        with self._transaction() as conn:
            conn.execute(f'DELETE FROM {Table.Queue.value}')
        logging.info('Sync queue cleared.')

    def queue_size(self) -> int:
        with self._transaction() as conn:
            return conn.execute(f'SELECT COUNT(*) FROM {Table.Queue.value}').fetchone()[0]

    def pending_ids(self, action: Optional[Action] = None) -> set:
        """Return the transaction ids that have pending outbox items.

        Args:
            action: Only consider items of this action, if given.
        """
        with self._transaction() as conn:
            if action is None:
                rows = conn.execute(f'SELECT DISTINCT transaction_id FROM {Table.Queue.value}').fetchall()
            else:
                rows = conn.execute(
                    f'SELECT DISTINCT transaction_id FROM {Table.Queue.value} WHERE action = ?',
                    (Action(action).value,)
                ).fetchall()
        return {r[0] for r in rows}

    # Metadata

    def get_metadata(self) -> SyncMetadata:
        """Return the sync metadata, falling back to defaults for unset fields."""
        with self._transaction() as conn:
            row = conn.execute(f'SELECT * FROM {Table.Meta.value} WHERE meta_id = 1').fetchone()
        if not row:
            return SyncMetadata(
                auto_sync_enabled=self._defaults.auto_sync_enabled,
                auto_sync_interval_minutes=self._defaults.auto_sync_interval_minutes,
            )

        enabled = row['auto_sync_enabled']
        interval = row['auto_sync_interval_minutes']
        return SyncMetadata(
            remote_ledger_id=row['remote_ledger_id'] or None,
            last_sync_timestamp=row['last_sync_timestamp'],
            auto_sync_enabled=self._defaults.auto_sync_enabled if enabled is None else bool(enabled),
            auto_sync_interval_minutes=self._defaults.auto_sync_interval_minutes if interval is None else interval,
            last_sync_error=row['last_sync_error'],
        )

    def set_metadata(self, **fields) -> SyncMetadata:
        """Update the given metadata fields.

        Raises:
            KeyError: If a field is not a metadata field.

        Returns:
            SyncMetadata: The updated metadata.
        """
        unknown = set(fields) - set(METADATA_FIELDS)
        if unknown:
            raise KeyError(f'Unknown metadata fields: {sorted(unknown)}')
        if fields:
            values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
            assignments = ', '.join(f'"{k}" = ?' for k in fields)
            with self._transaction() as conn:
                conn.execute(
                    f'INSERT OR IGNORE INTO {Table.Meta.value} (meta_id) VALUES (1)'
                )
                conn.execute(f'UPDATE {Table.Meta.value} SET {assignments} WHERE meta_id = 1', values)
        return self.get_metadata()
