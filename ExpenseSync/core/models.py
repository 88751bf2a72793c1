"""
Domain records shared by the store, the remote ledgers and the coordinator.

:class:`Transaction` is the synchronized record. :class:`OutboxItem` is one pending
remote mutation, and :class:`SyncMetadata` holds the per-device sync bookkeeping.
"""
import dataclasses
import datetime
import decimal
import enum
import json
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

DATE_FORMAT = '%Y-%m-%d'

#: Google Sheets day zero
SERIAL_DATE_BASE = datetime.date(1899, 12, 30)


class Kind(enum.StrEnum):
    """Transaction direction."""
    Income = 'income'
    Expense = 'expense'


class Action(enum.StrEnum):
    """Outbox mutation type."""
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


def now_ms() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def to_decimal(value: Any) -> Decimal:
    """Convert a stored or user supplied amount to a finite :class:`~decimal.Decimal`.

    Floats are converted through their shortest string representation so that
    ``12.5`` becomes ``Decimal('12.5')`` rather than its binary expansion.

    Raises:
        ValueError: If the value is empty, not numeric, or not finite.
    """
    if isinstance(value, bool):
        raise ValueError(f'Invalid amount: {value!r}')
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(',', '')
        if not text:
            raise ValueError('Amount is empty')
        try:
            result = Decimal(text)
        except decimal.InvalidOperation as ex:
            raise ValueError(f'Invalid amount: {value!r}') from ex
    else:
        raise ValueError(f'Invalid amount: {value!r}')

    if not result.is_finite():
        raise ValueError(f'Amount must be finite, got {value!r}')
    return result


def serial_to_date(serial: float) -> datetime.date:
    """Converts a Google Sheets date serial to a date.

    Raises:
        ValueError: If the serial number is out of a plausible range.
    """
    if serial < -20000 or serial > 2958465:
        raise ValueError(f'Serial date "{serial}" is out of supported range.')
    return SERIAL_DATE_BASE + datetime.timedelta(days=int(serial))


def to_date(value: Any) -> datetime.date:
    """Convert an ISO string, a datetime, or a Google serial number to a calendar date.

    Raises:
        ValueError: If the value cannot be interpreted as a date.
    """
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, bool):
        raise ValueError(f'Invalid date: {value!r}')
    if isinstance(value, (int, float)):
        return serial_to_date(float(value))
    if isinstance(value, str):
        text = value.strip()
        # Timestamps are cut to their calendar day
        if len(text) > 10 and text[10] in 'T ':
            text = text[:10]
        try:
            return datetime.datetime.strptime(text, DATE_FORMAT).date()
        except ValueError:
            pass
        try:
            return serial_to_date(float(text))
        except ValueError as ex:
            raise ValueError(f'Invalid date: {value!r}') from ex
    raise ValueError(f'Invalid date: {value!r}')


@dataclasses.dataclass
class Transaction:
    """A single income or expense entry.

    ``id`` is client generated and never reused. ``updated_at`` is refreshed on every
    mutation and decides conflicts between devices. ``synced`` is local bookkeeping
    and is never written to a remote ledger.
    """
    id: str
    amount: Decimal
    date: datetime.date
    kind: Kind = Kind.Expense
    description: str = ''
    category: str = ''
    cleared: bool = False
    updated_at: int = 0
    created_at: Optional[int] = None
    synced: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError('Transaction id must be a non-empty string')
        self.amount = to_decimal(self.amount)
        self.date = to_date(self.date)
        self.kind = Kind(self.kind)
        self.description = '' if self.description is None else str(self.description)
        self.category = '' if self.category is None else str(self.category)
        self.cleared = bool(self.cleared)
        self.updated_at = int(self.updated_at)
        if self.created_at is not None:
            self.created_at = int(self.created_at)

    @classmethod
    def new(cls,
            amount: Union[Decimal, float, int, str],
            date: Union[datetime.date, str],
            kind: Union[Kind, str] = Kind.Expense,
            description: str = '',
            category: str = '',
            cleared: bool = False) -> 'Transaction':
        """Create a transaction with a fresh id and creation/update stamps."""
        stamp = now_ms()
        return cls(
            id=new_id(),
            amount=amount,
            date=date,
            kind=kind,
            description=description,
            category=category,
            cleared=cleared,
            updated_at=stamp,
            created_at=stamp,
        )

    def touch(self) -> 'Transaction':
        """Refresh ``updated_at`` so that it strictly increases, even if the clock stalls."""
        self.updated_at = max(now_ms(), self.updated_at + 1)
        return self

    def copy(self, **changes) -> 'Transaction':
        return dataclasses.replace(self, **changes)

    def sort_key(self) -> tuple:
        """Key for the canonical ordering; sort with ``reverse=True``."""
        return self.date.toordinal(), self.created_at or self.updated_at

    def content(self) -> tuple:
        """The synchronized fields, without local bookkeeping."""
        return (
            self.id,
            self.amount,
            self.description,
            self.category,
            self.date,
            self.kind,
            self.cleared,
            self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON compatible representation."""
        return {
            'id': self.id,
            'amount': str(self.amount),
            'date': self.date.strftime(DATE_FORMAT),
            'kind': str(self.kind),
            'description': self.description,
            'category': self.category,
            'cleared': self.cleared,
            'updated_at': self.updated_at,
            'created_at': self.created_at,
            'synced': self.synced,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        fields = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in fields})


def sort_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Return transactions by date descending, newest created/updated first within a day."""
    return sorted(transactions, key=Transaction.sort_key, reverse=True)


@dataclasses.dataclass
class OutboxItem:
    """A local mutation waiting to be applied to the remote ledger.

    The payload is the full transaction for create and update, and ``{'id': ...}``
    for delete.
    """
    action: Action
    payload: Union[Transaction, Dict[str, str]]
    id: str = dataclasses.field(default_factory=new_id)
    timestamp: int = dataclasses.field(default_factory=now_ms)

    def __post_init__(self) -> None:
        self.action = Action(self.action)
        if self.action == Action.Delete:
            if isinstance(self.payload, Transaction):
                self.payload = {'id': self.payload.id}
            if not isinstance(self.payload, dict) or not self.payload.get('id'):
                raise ValueError('Delete items need an {"id": ...} payload')
        elif not isinstance(self.payload, Transaction):
            raise ValueError(f'{self.action} items need a Transaction payload')

    @classmethod
    def create(cls, transaction: Transaction) -> 'OutboxItem':
        return cls(Action.Create, transaction.copy())

    @classmethod
    def update(cls, transaction: Transaction) -> 'OutboxItem':
        return cls(Action.Update, transaction.copy())

    @classmethod
    def delete(cls, transaction_id: str) -> 'OutboxItem':
        return cls(Action.Delete, {'id': transaction_id})

    @property
    def transaction_id(self) -> str:
        """Id of the transaction this item mutates."""
        if isinstance(self.payload, Transaction):
            return self.payload.id
        return self.payload['id']

    def to_json(self) -> str:
        if isinstance(self.payload, Transaction):
            payload = self.payload.to_dict()
            payload.pop('synced', None)
        else:
            payload = dict(self.payload)
        return json.dumps({
            'id': self.id,
            'action': str(self.action),
            'payload': payload,
            'timestamp': self.timestamp,
        })

    @classmethod
    def from_json(cls, text: str) -> 'OutboxItem':
        """Decode an item stored by :meth:`to_json`.

        Raises:
            ValueError: If the text is not a valid outbox item.
        """
        try:
            data = json.loads(text)
            action = Action(data['action'])
            payload = data['payload']
            if action != Action.Delete:
                payload = Transaction.from_dict(payload)
            return cls(action=action, payload=payload, id=data['id'], timestamp=int(data['timestamp']))
        except (KeyError, TypeError) as ex:
            logging.error(f'Malformed outbox item: {ex}')
            raise ValueError(f'Malformed outbox item: {ex}') from ex


@dataclasses.dataclass
class SyncMetadata:
    """Per-device sync bookkeeping.

    ``remote_ledger_id`` is ``None`` until the ledger has been found or created.
    """
    remote_ledger_id: Optional[str] = None
    last_sync_timestamp: Optional[int] = None
    auto_sync_enabled: bool = True
    auto_sync_interval_minutes: int = 5
    last_sync_error: Optional[str] = None
