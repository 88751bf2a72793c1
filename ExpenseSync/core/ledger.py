"""Remote ledger adapters.

A ledger is the remote system of record: one row per transaction plus a small
key/value metadata region. :class:`LedgerAdapter` is the contract the sync
coordinator and the strategies work against; :class:`SheetsLedger` implements it
on top of a Google spreadsheet.

The spreadsheet layout::

    Transactions!A1:I1   ID | Date | Type | Category | Amount | Description | Cleared | Updated At | Created At
    Transactions!A2:I    one row per transaction
    Metadata!A1:B        key | value rows, e.g. lastSync

"""
import abc
import logging
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from . import service
from .models import DATE_FORMAT, Kind, Transaction, now_ms, sort_transactions
from ..status import status

HEADER: List[str] = [
    'ID', 'Date', 'Type', 'Category', 'Amount', 'Description', 'Cleared', 'Updated At', 'Created At',
]
COLUMNS: List[str] = [
    'id', 'date', 'kind', 'category', 'amount', 'description', 'cleared', 'updated_at', 'created_at',
]
LAST_COLUMN: str = service.idx_to_col(len(HEADER) - 1)

SPREADSHEET_MIME_TYPE = 'application/vnd.google-apps.spreadsheet'
DEFAULT_LEDGER_NAME = 'Expense Manager Sync'
DEFAULT_WORKSHEET = 'Transactions'
DEFAULT_METADATA_WORKSHEET = 'Metadata'

LAST_SYNC_KEY = 'lastSync'

TRUE_VALUES = {'true', '1', 'yes', 'y', 'x'}


class LedgerAdapter(abc.ABC):
    """Read/write access to a remote transaction ledger.

    Any I/O failure propagates as an exception; callers must not assume a partial
    write succeeded.
    """

    def __init__(self) -> None:
        self.ledger_id: Optional[str] = None

    def open(self, ledger_id: str) -> None:
        """Point the adapter at an existing ledger."""
        self.ledger_id = ledger_id

    def require_ledger(self) -> str:
        if not self.ledger_id:
            raise status.LedgerNotFoundException
        return self.ledger_id

    @abc.abstractmethod
    def find_or_create_ledger(self) -> str:
        """Find the ledger by its well-known name or create it, open it, and return its id.

        Safe to call repeatedly: an existing ledger is always reused.
        """

    @abc.abstractmethod
    def read_all(self) -> List[Transaction]:
        """Return every readable transaction in the ledger. Malformed rows are skipped."""

    @abc.abstractmethod
    def write_all(self, transactions: List[Transaction]) -> None:
        """Replace the ledger's transactions with exactly the given set."""

    @abc.abstractmethod
    def upsert(self, transaction: Transaction) -> None:
        """Update the row with the transaction's id in place, or append it."""

    @abc.abstractmethod
    def remove(self, transaction_id: str) -> None:
        """Delete the row with the given id. Removing an absent id is a no-op."""

    @abc.abstractmethod
    def get_metadata(self) -> Dict[str, str]:
        """Return the ledger-level key/value pairs."""

    @abc.abstractmethod
    def set_metadata(self, values: Dict[str, str]) -> None:
        """Merge the given pairs into the ledger-level metadata."""

    def stamp(self) -> None:
        """Record the current time as the ledger's last sync marker."""
        self.set_metadata({LAST_SYNC_KEY: str(now_ms())})


def encode_row(transaction: Transaction) -> List[str]:
    """Encode a transaction as a ledger row, in :data:`HEADER` order."""
    return [
        transaction.id,
        transaction.date.strftime(DATE_FORMAT),
        str(transaction.kind),
        transaction.category,
        str(transaction.amount),
        transaction.description,
        'TRUE' if transaction.cleared else 'FALSE',
        str(transaction.updated_at),
        '' if transaction.created_at is None else str(transaction.created_at),
    ]


def _text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in TRUE_VALUES


def _to_kind(value: Any) -> Optional[str]:
    text = _text(value).lower()
    return text if text in {k.value for k in Kind} else None


def decode_rows(values: List[List[Any]]) -> List[Transaction]:
    """Decode ledger rows into transactions.

    Rows are padded to the header width. Rows with a missing id, an unknown type, or an
    unparsable amount, date or update time are skipped with a warning. When an id
    appears more than once, the row with the greatest update time wins.

    Args:
        values: Rows as returned by the Sheets values API, without the header row.

    Returns:
        The decoded transactions, in canonical order.
    """
    if not values:
        return []

    width = len(COLUMNS)
    padded = [(list(row) + [None] * width)[:width] for row in values]
    df = pd.DataFrame(padded, columns=COLUMNS, dtype=object)
    df['row'] = range(2, len(df) + 2)

    df['id'] = df['id'].map(_text)
    df = df[df['id'] != ''].copy()

    df['kind'] = df['kind'].map(_to_kind)
    df['updated_at'] = pd.to_numeric(df['updated_at'].map(_text), errors='coerce')
    df['created_at'] = pd.to_numeric(df['created_at'].map(_text), errors='coerce')
    invalid = df['kind'].isna() | df['updated_at'].isna()
    for row in df.loc[invalid, 'row']:
        logging.warning(f'Skipping malformed ledger row {row}: missing type or update time.')
    df = df[~invalid]

    df = df.sort_values('updated_at', kind='stable').drop_duplicates(subset='id', keep='last')

    transactions: List[Transaction] = []
    for rec in df.to_dict('records'):
        try:
            transactions.append(Transaction(
                id=rec['id'],
                amount=rec['amount'],
                date=rec['date'],
                kind=rec['kind'],
                category=_text(rec['category']),
                description=_text(rec['description']),
                cleared=_to_bool(rec['cleared']),
                updated_at=int(rec['updated_at']),
                created_at=None if pd.isna(rec['created_at']) else int(rec['created_at']),
            ))
        except (ValueError, TypeError) as ex:
            logging.warning(f'Skipping malformed ledger row {rec["row"]}: {ex}')
    return sort_transactions(transactions)


class SheetsLedger(LedgerAdapter):
    """Ledger stored in a Google spreadsheet.

    Args:
        credentials_provider: Returns usable google-auth credentials, or None when signed out.
        name: Title of the spreadsheet to find or create.
        worksheet: Worksheet holding the transactions.
        metadata_worksheet: Worksheet holding the key/value metadata.
        max_attempts: Attempts per request for transient failures.
        wait_seconds: Initial wait between attempts.
        build_service: Factory ``(api, version, credentials) -> resource``.
    """

    def __init__(self,
                 credentials_provider: Callable[[], Any],
                 name: str = DEFAULT_LEDGER_NAME,
                 worksheet: str = DEFAULT_WORKSHEET,
                 metadata_worksheet: str = DEFAULT_METADATA_WORKSHEET,
                 max_attempts: int = service.MAX_ATTEMPTS,
                 wait_seconds: float = service.WAIT_SECONDS,
                 build_service: Callable[[str, str, Any], Any] = service.get_service) -> None:
        super().__init__()
        self.credentials_provider = credentials_provider
        self.name = name
        self.worksheet = worksheet
        self.metadata_worksheet = metadata_worksheet
        self.max_attempts = max_attempts
        self.wait_seconds = wait_seconds
        self.build_service = build_service
        self._sheet_ids: Dict[str, int] = {}

    def open(self, ledger_id: str) -> None:
        if ledger_id != self.ledger_id:
            self._sheet_ids.clear()
        super().open(ledger_id)

    def _credentials(self) -> Any:
        creds = self.credentials_provider()
        if creds is None:
            raise status.NotAuthenticatedException
        return creds

    def _sheets(self) -> Any:
        return self.build_service('sheets', 'v4', self._credentials())

    def _drive(self) -> Any:
        return self.build_service('drive', 'v3', self._credentials())

    def _execute(self, request: Any, description: str) -> Any:
        return service.execute(
            request,
            description=description,
            max_attempts=self.max_attempts,
            wait_seconds=self.wait_seconds,
        )

    @property
    def data_range(self) -> str:
        return f'{self.worksheet}!A2:{LAST_COLUMN}'

    def find_or_create_ledger(self) -> str:
        """Find the spreadsheet by name, or create it, then make sure both worksheets and the header exist.

        Raises:
            status.NotAuthenticatedException: If no credentials are available.
            status.LedgerProvisioningFailedException: If the spreadsheet cannot be found or created.
        """
        try:
            ledger_id = self._find_ledger()
            if ledger_id:
                logging.info(f'Found ledger "{self.name}" ({ledger_id}).')
            else:
                ledger_id = self._create_ledger()
                logging.info(f'Created ledger "{self.name}" ({ledger_id}).')
            self.open(ledger_id)
            self._ensure_structure()
        except status.ServiceUnavailableException as ex:
            raise status.LedgerProvisioningFailedException(str(ex)) from ex
        return ledger_id

    def _find_ledger(self) -> Optional[str]:
        escaped = self.name.replace('\\', '\\\\').replace("'", "\\'")
        query = f"name='{escaped}' and mimeType='{SPREADSHEET_MIME_TYPE}' and trashed=false"
        result = self._execute(
            self._drive().files().list(q=query, spaces='drive', fields='files(id, name)', pageSize=10),
            f'Searching for ledger "{self.name}"'
        )
        files = result.get('files', []) if result else []
        if len(files) > 1:
            logging.warning(f'Found {len(files)} spreadsheets named "{self.name}", using the first.')
        return files[0]['id'] if files else None

    def _create_ledger(self) -> str:
        body = {
            'properties': {'title': self.name},
            'sheets': [
                {'properties': {'title': self.worksheet, 'gridProperties': {'frozenRowCount': 1}}},
                {'properties': {'title': self.metadata_worksheet}},
            ],
        }
        result = self._execute(
            self._sheets().spreadsheets().create(body=body, fields='spreadsheetId'),
            f'Creating ledger "{self.name}"'
        )
        ledger_id = (result or {}).get('spreadsheetId')
        if not ledger_id:
            raise status.LedgerProvisioningFailedException('The Sheets API returned no spreadsheet id.')
        return ledger_id

    def _load_sheet_ids(self) -> Dict[str, int]:
        result = self._execute(
            self._sheets().spreadsheets().get(
                spreadsheetId=self.require_ledger(),
                fields='sheets(properties(sheetId,title))'
            ),
            'Reading ledger worksheets'
        )
        self._sheet_ids = {
            s['properties']['title']: s['properties']['sheetId']
            for s in result.get('sheets', [])
        }
        return self._sheet_ids

    def _sheet_id(self, title: str) -> int:
        if title not in self._sheet_ids:
            self._load_sheet_ids()
        if title not in self._sheet_ids:
            raise status.LedgerNotFoundException(f'Worksheet "{title}" not found.')
        return self._sheet_ids[title]

    def _ensure_structure(self) -> None:
        """Add missing worksheets and repair the header row."""
        sheets = self._load_sheet_ids()
        missing = [t for t in (self.worksheet, self.metadata_worksheet) if t not in sheets]
        if missing:
            logging.warning(f'Ledger is missing worksheets {missing}, adding them.')
            self._execute(
                self._sheets().spreadsheets().batchUpdate(
                    spreadsheetId=self.require_ledger(),
                    body={'requests': [{'addSheet': {'properties': {'title': t}}} for t in missing]}
                ),
                'Adding ledger worksheets'
            )
            self._load_sheet_ids()

        header_range = f'{self.worksheet}!A1:{LAST_COLUMN}1'
        result = self._execute(
            self._sheets().spreadsheets().values().get(spreadsheetId=self.require_ledger(), range=header_range),
            'Reading ledger header'
        )
        current = (result.get('values') or [[]])[0]
        if [_text(v) for v in current] == HEADER:
            return

        logging.info(f'Writing ledger header to {header_range}.')
        self._execute(
            self._sheets().spreadsheets().values().update(
                spreadsheetId=self.require_ledger(),
                range=header_range,
                valueInputOption='RAW',
                body={'values': [HEADER]}
            ),
            'Writing ledger header'
        )
        self._execute(
            self._sheets().spreadsheets().batchUpdate(
                spreadsheetId=self.require_ledger(),
                body={'requests': [{
                    'repeatCell': {
                        'range': {
                            'sheetId': self._sheet_id(self.worksheet),
                            'startRowIndex': 0,
                            'endRowIndex': 1,
                        },
                        'cell': {'userEnteredFormat': {'textFormat': {'bold': True}}},
                        'fields': 'userEnteredFormat.textFormat.bold',
                    }
                }]}
            ),
            'Formatting ledger header'
        )

    def _get_values(self, range_: str, description: str) -> List[List[Any]]:
        result = self._execute(
            self._sheets().spreadsheets().values().get(
                spreadsheetId=self.require_ledger(),
                range=range_,
                valueRenderOption='UNFORMATTED_VALUE',
                dateTimeRenderOption='SERIAL_NUMBER',
            ),
            description
        )
        return (result or {}).get('values', [])

    def read_all(self) -> List[Transaction]:
        values = self._get_values(self.data_range, 'Reading ledger rows')
        transactions = decode_rows(values)
        logging.debug(f'Read {len(transactions)} transactions from {len(values)} ledger rows.')
        return transactions

    def write_all(self, transactions: List[Transaction]) -> None:
        rows = [encode_row(t) for t in transactions]
        self._execute(
            self._sheets().spreadsheets().values().clear(
                spreadsheetId=self.require_ledger(), range=self.data_range, body={}
            ),
            'Clearing ledger rows'
        )
        if rows:
            self._execute(
                self._sheets().spreadsheets().values().update(
                    spreadsheetId=self.require_ledger(),
                    range=f'{self.worksheet}!A2',
                    valueInputOption='RAW',
                    body={'values': rows}
                ),
                'Writing ledger rows'
            )
        logging.debug(f'Wrote {len(rows)} transactions to the ledger.')

    def _row_ids(self) -> List[str]:
        values = self._get_values(f'{self.worksheet}!A2:A', 'Reading ledger ids')
        return [_text(row[0]) if row else '' for row in values]

    def upsert(self, transaction: Transaction) -> None:
        ids = self._row_ids()
        row = encode_row(transaction)
        if transaction.id in ids:
            sheet_row = ids.index(transaction.id) + 2
            self._execute(
                self._sheets().spreadsheets().values().update(
                    spreadsheetId=self.require_ledger(),
                    range=f'{self.worksheet}!A{sheet_row}:{LAST_COLUMN}{sheet_row}',
                    valueInputOption='RAW',
                    body={'values': [row]}
                ),
                f'Updating ledger row {sheet_row}'
            )
            logging.debug(f'Updated "{transaction.id}" in ledger row {sheet_row}.')
            return

        self._execute(
            self._sheets().spreadsheets().values().append(
                spreadsheetId=self.require_ledger(),
                range=f'{self.worksheet}!A:{LAST_COLUMN}',
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': [row]}
            ),
            'Appending ledger row'
        )
        logging.debug(f'Appended "{transaction.id}" to the ledger.')

    def remove(self, transaction_id: str) -> None:
        ids = self._row_ids()
        indexes = [i for i, v in enumerate(ids) if v == transaction_id]
        if not indexes:
            logging.debug(f'"{transaction_id}" is not in the ledger, nothing to remove.')
            return

        sheet_id = self._sheet_id(self.worksheet)
        # Delete from the bottom so earlier indexes stay valid
        requests = [{
            'deleteDimension': {
                'range': {
                    'sheetId': sheet_id,
                    'dimension': 'ROWS',
                    'startIndex': i + 1,
                    'endIndex': i + 2,
                }
            }
        } for i in sorted(indexes, reverse=True)]
        self._execute(
            self._sheets().spreadsheets().batchUpdate(
                spreadsheetId=self.require_ledger(), body={'requests': requests}
            ),
            'Deleting ledger rows'
        )
        logging.debug(f'Removed "{transaction_id}" from the ledger.')

    def get_metadata(self) -> Dict[str, str]:
        values = self._get_values(f'{self.metadata_worksheet}!A1:B', 'Reading ledger metadata')
        return {_text(row[0]): _text(row[1]) if len(row) > 1 else '' for row in values if row and _text(row[0])}

    def set_metadata(self, values: Dict[str, str]) -> None:
        data = self.get_metadata()
        data.update({k: str(v) for k, v in values.items()})
        self._execute(
            self._sheets().spreadsheets().values().update(
                spreadsheetId=self.require_ledger(),
                range=f'{self.metadata_worksheet}!A1',
                valueInputOption='RAW',
                body={'values': [[k, v] for k, v in data.items()]}
            ),
            'Writing ledger metadata'
        )
