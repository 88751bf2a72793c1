"""Sync coordinator: outbox draining and bidirectional merge.

Local mutations are written to the record store and appended to the outbox as one
unit, then a drain is requested in the background. A drain applies the outbox
items in FIFO order through the active strategy; an item is removed only once the
strategy succeeded, and a failing item stays queued without stopping the others.

A full sync pass drains first and then merges with the remote ledger:

1. Remote records that are newer than their local copy, or unknown locally, are
   stored locally (remote wins only when strictly newer). Queued creates and updates
   of such records lost to the remote copy and are dropped from the outbox.
2. The merged set starts from the remote records and takes every local record that
   is at least as new (local wins ties).
3. The merged set replaces the remote ledger's rows, in canonical order.

Pending delete items act as tombstones during the merge: the deleted records are
neither restored locally nor written back.

Only one drain or pass runs at a time. A call that finds one in flight returns
immediately.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from PySide6 import QtCore

from .database import RecordStore
from .ledger import LedgerAdapter
from .models import Action, OutboxItem, SyncMetadata, Transaction, now_ms, sort_transactions
from .service import AsyncWorker
from .strategies import SyncStrategy
from ..status import status

DRAIN_INTERVAL_SECONDS: int = 60
AUTO_SYNC_INTERVAL_MINUTES: int = 5


class SyncCoordinator(QtCore.QObject):
    """Orchestrates queue draining, merge passes and change notification.

    Args:
        store: The local record store.
        ledger: The remote ledger to merge against.
        strategy: Applies single outbox items remotely.
        auth: Any object with a ``get_usable_credential()`` method returning None when
            the remote cannot be reached without user interaction.
        drain_interval_seconds: Period of the background drain timer.
        drain_on_mutation: Request a background drain after every local mutation.

    Signals:
        changed (): Emitted after every completed drain or sync pass.
        statusChanged (str): Human readable sync status, e.g. ``'Last sync: error ...'``.
        queueChanged (int): Emitted with the outbox size after it changed.
        autoSyncChanged (bool, int): Emitted with the auto sync flag and interval in minutes
            after either was changed.
    """
    changed = QtCore.Signal()
    statusChanged = QtCore.Signal(str)
    queueChanged = QtCore.Signal(int)
    autoSyncChanged = QtCore.Signal(bool, int)

    def __init__(self,
                 store: RecordStore,
                 ledger: LedgerAdapter,
                 strategy: SyncStrategy,
                 auth: Any,
                 drain_interval_seconds: int = DRAIN_INTERVAL_SECONDS,
                 drain_on_mutation: bool = True,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.store = store
        self.ledger = ledger
        self.strategy = strategy
        self.auth = auth
        self.drain_on_mutation = drain_on_mutation

        self._guard = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        self._listeners_lock = threading.Lock()
        self._workers: set = set()
        self._workers_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._drain_requested = False
        self._stopped = False

        self.drain_timer = QtCore.QTimer(self)
        self.drain_timer.setInterval(int(drain_interval_seconds * 1000))
        self.drain_timer.timeout.connect(self.request_drain)

        meta = self.store.get_metadata()
        self.auto_sync_timer = QtCore.QTimer(self)
        self.auto_sync_timer.setInterval(meta.auto_sync_interval_minutes * 60 * 1000)
        self.auto_sync_timer.timeout.connect(self.request_sync)

    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    # Observers

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` after every completed drain or sync pass.

        The callback may run on a sync worker thread.

        Returns:
            A function that removes the subscription. Calling it twice is harmless.
        """
        with self._listeners_lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback()
            except Exception as ex:
                logging.error(f'Sync listener {callback!r} failed: {ex}')
        self.changed.emit()

    def _emit_queue_size(self) -> None:
        self.queueChanged.emit(self.store.queue_size())

    # Local mutations

    def _record(self, item: OutboxItem) -> None:
        self.store.record_mutation(item)
        self._emit_queue_size()
        if self.drain_on_mutation:
            self.request_drain()

    def enqueue_create(self, transaction: Transaction) -> Transaction:
        """Store a new transaction locally, queue it, and request a drain.

        A transaction without timestamps is stamped now.
        """
        transaction = transaction.copy(synced=False)
        if not transaction.updated_at:
            transaction.touch()
        if transaction.created_at is None:
            transaction.created_at = transaction.updated_at
        self._record(OutboxItem.create(transaction))
        return transaction

    def enqueue_update(self, transaction: Transaction) -> Transaction:
        """Store a modified transaction locally with a fresh ``updated_at``, queue it, and request a drain."""
        transaction = transaction.copy(synced=False).touch()
        self._record(OutboxItem.update(transaction))
        return transaction

    def enqueue_delete(self, transaction_id: str) -> None:
        """Remove a transaction locally, queue the remote delete, and request a drain."""
        self._record(OutboxItem.delete(transaction_id))

    def enqueue_toggle_cleared(self, transaction_id: str) -> Transaction:
        """Flip the cleared flag of a stored transaction.

        Raises:
            KeyError: If no transaction has this id.
        """
        transaction = self.store.get(transaction_id)
        if transaction is None:
            raise KeyError(f'No transaction with id "{transaction_id}"')
        return self.enqueue_update(transaction.copy(cleared=not transaction.cleared))

    # Drain

    def _resolve_ledger(self) -> str:
        meta = self.store.get_metadata()
        if meta.remote_ledger_id:
            if self.ledger.ledger_id != meta.remote_ledger_id:
                self.ledger.open(meta.remote_ledger_id)
            return meta.remote_ledger_id

        logging.info('No remote ledger recorded yet, looking it up.')
        ledger_id = self.ledger.find_or_create_ledger()
        self.store.set_metadata(remote_ledger_id=ledger_id)
        return ledger_id

    def _apply_queue(self, items: List[OutboxItem]) -> int:
        """Apply items in order. Returns the number of failures."""
        failures = 0
        for item in items:
            try:
                self.strategy.apply_item(item)
            except Exception as ex:
                failures += 1
                logging.warning(
                    f'Failed to sync {item.action} for "{item.transaction_id}" ({item.id}), '
                    f'will retry: {ex}'
                )
                continue

            self.store.dequeue(item.id)
            if item.action != Action.Delete:
                self.store.mark_synced([item.transaction_id])

        logging.info(f'Drained {len(items) - failures}/{len(items)} outbox item(s).')
        return failures

    def _drain(self) -> bool:
        """Drain the outbox. Returns False when there was nothing to do or the remote is unreachable."""
        items = self.store.list_queue()
        if not items:
            logging.debug('Sync queue is empty.')
            return False

        if self.auth.get_usable_credential() is None:
            logging.info(f'Not signed in, deferring {len(items)} outbox item(s).')
            return False

        self._resolve_ledger()
        self._apply_queue(items)
        self._emit_queue_size()
        return True

    def process_queue(self) -> bool:
        """Drain the outbox on the calling thread.

        Pass failures (e.g. the ledger cannot be provisioned) are logged and recorded as
        the last sync error.

        Returns:
            bool: False if another drain or pass was already running, True otherwise.
        """
        if not self._guard.acquire(blocking=False):
            logging.debug('Sync already in progress, skipping drain.')
            return False
        try:
            drained = self._drain()
        except status.NotAuthenticatedException:
            logging.info('Credentials became unavailable, drain deferred.')
            drained = False
        except Exception as ex:
            self._record_error(ex)
            drained = True
        finally:
            self._release()

        if drained:
            self._notify()
        return True

    # Merge

    def _merge(self) -> Dict[str, int]:
        tombstones = self.store.pending_ids(Action.Delete)

        local = {t.id: t for t in self.store.list()}
        remote = {t.id: t for t in self.ledger.read_all() if t.id not in tombstones}

        pulled = [
            r.copy(synced=False) for i, r in remote.items()
            if i not in local or r.updated_at > local[i].updated_at
        ]
        self._drop_superseded({t.id for t in pulled})
        self.store.put_many(pulled)

        # Local is re-read so records stored above take part
        merged: Dict[str, Transaction] = dict(remote)
        for transaction in self.store.list():
            if transaction.id in tombstones:
                continue
            theirs = merged.get(transaction.id)
            if theirs is None or transaction.updated_at >= theirs.updated_at:
                merged[transaction.id] = transaction

        ordered = sort_transactions(merged.values())
        self.ledger.write_all(ordered)
        self.ledger.stamp()
        self.store.mark_synced(merged.keys())

        pushed = sum(1 for t in ordered if t.id not in remote or t.updated_at > remote[t.id].updated_at)
        return {'pulled': len(pulled), 'pushed': pushed, 'total': len(ordered)}

    def _drop_superseded(self, transaction_ids: set) -> None:
        """Dequeue create and update items of records replaced by a newer remote copy."""
        if not transaction_ids:
            return
        stale = [
            item for item in self.store.list_queue()
            if item.action != Action.Delete and item.transaction_id in transaction_ids
        ]
        for item in stale:
            logging.info(
                f'Dropping {item.action} for "{item.transaction_id}" ({item.id}), '
                f'the remote copy is newer.'
            )
            self.store.dequeue(item.id)
        if stale:
            self._emit_queue_size()

    def _full_pass(self) -> None:
        if self.auth.get_usable_credential() is None:
            raise status.NotAuthenticatedException

        self.statusChanged.emit('Syncing...')
        self._resolve_ledger()

        items = self.store.list_queue()
        if items:
            self._apply_queue(items)
            self._emit_queue_size()

        result = self._merge()
        meta = self.store.set_metadata(last_sync_timestamp=now_ms(), last_sync_error=None)
        logging.info(
            f'Sync finished: {result["pulled"]} pulled, {result["pushed"]} pushed, '
            f'{result["total"]} transactions in the ledger.'
        )
        self.statusChanged.emit(self.status_text(meta))

    def sync_now(self) -> bool:
        """Run a full drain and merge pass on the calling thread.

        Returns:
            bool: True when the pass completed, False if another pass was already running.

        Raises:
            status.NotAuthenticatedException: If no usable credential is available.
            status.BaseStatusException: If the ledger cannot be provisioned, read or written.
        """
        if not self._guard.acquire(blocking=False):
            logging.debug('Sync already in progress, skipping sync.')
            return False
        try:
            self._full_pass()
        except status.NotAuthenticatedException:
            raise
        except Exception as ex:
            self._record_error(ex)
            self._notify()
            raise
        finally:
            self._release()

        self._notify()
        return True

    def _record_error(self, ex: Exception) -> None:
        message = str(ex) or type(ex).__name__
        logging.error(f'Sync failed: {message}')
        meta = self.store.set_metadata(last_sync_error=message)
        self.statusChanged.emit(self.status_text(meta))

    @staticmethod
    def status_text(meta: SyncMetadata) -> str:
        """Return the user-facing sync status for the given metadata."""
        if meta.last_sync_error:
            return f'Last sync: error {meta.last_sync_error}'
        if meta.last_sync_timestamp is None:
            return 'Never synced'
        stamp = QtCore.QDateTime.fromMSecsSinceEpoch(meta.last_sync_timestamp)
        return f'Last sync: {stamp.toString("yyyy-MM-dd HH:mm:ss")}'

    # Background triggers

    def _start_worker(self, func: Callable[[], Any], name: str) -> AsyncWorker:
        worker = AsyncWorker(func)
        worker.setObjectName(name)
        worker.errorOccurred.connect(lambda ex: logging.error(f'{name} failed: {ex}'))
        with self._workers_lock:
            self._workers = {w for w in self._workers if not w.isFinished()}
            self._workers.add(worker)
        worker.start()
        return worker

    def _release(self) -> None:
        # A drain asked for during the pass runs now, so its items do not wait for the timer
        with self._drain_lock:
            self._guard.release()
            requested = self._drain_requested and not self._stopped
            self._drain_requested = False
        if requested:
            self.request_drain()

    @QtCore.Slot()
    def request_drain(self) -> Optional[AsyncWorker]:
        """Drain the outbox on a background thread. Does not block on network I/O."""
        if self._stopped:
            return None
        with self._drain_lock:
            if self.is_syncing:
                self._drain_requested = True
                return None
        return self._start_worker(self.process_queue, 'drain')

    def _background_sync(self) -> None:
        if self.auth.get_usable_credential() is None:
            logging.info('Not signed in, background sync skipped.')
            return
        try:
            self.sync_now()
        except status.NotAuthenticatedException:
            logging.info('Not signed in, background sync skipped.')
        except status.BaseStatusException as ex:
            logging.warning(f'Background sync failed: {ex}')

    @QtCore.Slot()
    def request_sync(self) -> Optional[AsyncWorker]:
        """Run a full pass on a background thread. Errors are logged, not raised."""
        if self._stopped or self.is_syncing:
            return None
        return self._start_worker(self._background_sync, 'sync')

    @QtCore.Slot(bool)
    def on_connectivity_changed(self, online: bool) -> None:
        if online:
            logging.debug('Back online, requesting drain.')
            self.request_drain()

    # Settings

    def get_sync_metadata(self) -> SyncMetadata:
        return self.store.get_metadata()

    def set_auto_sync(self, enabled: bool) -> SyncMetadata:
        """Enable or disable the periodic full sync."""
        meta = self.store.set_metadata(auto_sync_enabled=bool(enabled))
        if enabled:
            self.auto_sync_timer.start()
        else:
            self.auto_sync_timer.stop()
        logging.info(f'Auto sync {"enabled" if enabled else "disabled"}.')
        self.autoSyncChanged.emit(meta.auto_sync_enabled, meta.auto_sync_interval_minutes)
        return meta

    def set_auto_sync_interval(self, minutes: int) -> SyncMetadata:
        """Change the period of the automatic full sync.

        Raises:
            ValueError: If minutes is not a positive integer.
        """
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
            raise ValueError(f'Auto sync interval must be a positive number of minutes, got {minutes!r}')
        meta = self.store.set_metadata(auto_sync_interval_minutes=minutes)
        self.auto_sync_timer.setInterval(minutes * 60 * 1000)
        self.autoSyncChanged.emit(meta.auto_sync_enabled, meta.auto_sync_interval_minutes)
        return meta

    # Lifecycle

    def start(self) -> None:
        """Start the periodic timers and request an initial drain."""
        self._stopped = False
        meta = self.store.get_metadata()
        self.drain_timer.start()
        if meta.auto_sync_enabled:
            self.auto_sync_timer.start()
        self.statusChanged.emit(self.status_text(meta))
        self.request_drain()

    def shutdown(self, timeout_ms: int = 30000) -> None:
        """Stop the timers, wait for running workers, and drop all subscribers."""
        self._stopped = True
        self.drain_timer.stop()
        self.auto_sync_timer.stop()
        with self._workers_lock:
            workers = list(self._workers)
            self._workers.clear()
        for worker in workers:
            if not worker.wait(timeout_ms):
                logging.warning(f'Sync worker "{worker.objectName()}" did not finish in time.')
        with self._listeners_lock:
            self._listeners.clear()
