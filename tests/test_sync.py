"""Tests for ExpenseSync.core.sync.

The coordinator runs against the in-memory :class:`~ExpenseSync.core.api.MockApi`
for most cases, and against a :class:`~ExpenseSync.core.ledger.SheetsLedger` backed
by the Google API stand-in for the end-to-end case.
"""
import threading
from decimal import Decimal
from typing import Any, Callable, List, Optional
from unittest.mock import Mock, patch

from ExpenseSync.core.api import MockApi
from ExpenseSync.core.ledger import HEADER, LAST_SYNC_KEY, SheetsLedger
from ExpenseSync.core.models import Action, OutboxItem, SyncMetadata, Transaction, now_ms
from ExpenseSync.core.strategies import MockApiSyncStrategy, SheetsSyncStrategy, SyncStrategy
from ExpenseSync.core.sync import SyncCoordinator
from ExpenseSync.status import status
from tests.base import BaseTestCase, FakeAuth, FakeGoogle


def make(tid: str, updated_at: int, amount: Any = '10', description: str = '', date: str = '2025-01-01',
         **kwargs) -> Transaction:
    return Transaction(id=tid, amount=amount, date=date, description=description, updated_at=updated_at,
                       **kwargs)


class BlockingStrategy(SyncStrategy):
    """Blocks inside ``apply_item`` until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.applied: List[OutboxItem] = []

    def apply_item(self, item: OutboxItem) -> None:
        self.entered.set()
        self.release.wait(5)
        self.applied.append(item)


class RacingStrategy(MockApiSyncStrategy):
    """Calls ``on_apply`` once, after the first item was applied."""

    def __init__(self, api: MockApi, on_apply: Callable[[], None]) -> None:
        super().__init__(api)
        self.on_apply = on_apply

    def apply_item(self, item: OutboxItem) -> None:
        super().apply_item(item)
        callback, self.on_apply = self.on_apply, None
        if callback:
            callback()


class ObservedLock:
    """Lock that signals when it was released."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.released = threading.Event()

    def acquire(self, blocking: bool = True) -> bool:
        return self._lock.acquire(blocking)

    def locked(self) -> bool:
        return self._lock.locked()

    def release(self) -> None:
        self._lock.release()
        self.released.set()


class SyncTestCase(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.api = MockApi()
        self.auth = FakeAuth()
        self.coordinator = self.make_coordinator()

    def tearDown(self) -> None:
        self.coordinator.shutdown(timeout_ms=5000)
        super().tearDown()

    def make_coordinator(self, strategy: Optional[SyncStrategy] = None, ledger: Any = None) -> SyncCoordinator:
        ledger = ledger or self.api
        return SyncCoordinator(
            self.store,
            ledger,
            strategy or MockApiSyncStrategy(self.api),
            self.auth,
            drain_on_mutation=False,
        )


class ScenarioTests(SyncTestCase):

    def test_offline_create_then_drain(self):
        self.auth.token = None
        self.coordinator.enqueue_create(make('t1', 1000, amount=12.5))

        self.assertEqual(self.store.queue_size(), 1)
        [local] = self.store.list()
        self.assertEqual(local.amount, Decimal('12.5'))
        self.assertEqual(local.updated_at, 1000)
        self.assertFalse(local.synced)

        self.coordinator.process_queue()
        self.assertEqual(self.store.queue_size(), 1)
        self.assertEqual(self.api.calls, [])

        self.auth.token = 'token'
        self.assertTrue(self.coordinator.process_queue())
        self.assertEqual(self.store.queue_size(), 0)
        self.assertTrue(self.store.get('t1').synced)
        self.assertEqual(list(self.api.records()), ['t1'])

    def test_remote_newer_wins(self):
        self.store.put(make('t2', 500, amount='10'))
        self.api.upsert(make('t2', 900, amount='25.75'))

        self.assertTrue(self.coordinator.sync_now())
        local = self.store.get('t2')
        self.assertEqual(local.amount, Decimal('25.75'))
        self.assertEqual(local.updated_at, 900)
        self.assertTrue(local.synced)


class DrainTests(SyncTestCase):

    def test_partial_failure_isolation(self):
        self.coordinator.enqueue_create(make('a', 1000))
        self.coordinator.enqueue_create(make('b', 1000))
        self.api.failing_ids = {'a'}

        self.coordinator.process_queue()
        self.assertEqual([i.transaction_id for i in self.store.list_queue()], ['a'])
        self.assertFalse(self.store.get('a').synced)
        self.assertTrue(self.store.get('b').synced)
        self.assertEqual(set(self.api.records()), {'b'})

        self.api.failing_ids = set()
        self.coordinator.process_queue()
        self.assertEqual(self.store.queue_size(), 0)
        self.assertTrue(self.store.get('a').synced)

    def test_items_applied_in_order(self):
        strategy = Mock(spec=SyncStrategy)
        coordinator = self.make_coordinator(strategy=strategy)
        t = coordinator.enqueue_create(make('a', 1000))
        coordinator.enqueue_update(t.copy(description='edit'))
        coordinator.enqueue_delete('a')

        coordinator.process_queue()
        actions = [c.args[0].action for c in strategy.apply_item.call_args_list]
        self.assertEqual(actions, [Action.Create, Action.Update, Action.Delete])
        self.assertEqual(self.store.queue_size(), 0)

    def test_deferred_when_unauthenticated(self):
        strategy = Mock(spec=SyncStrategy)
        coordinator = self.make_coordinator(strategy=strategy)
        coordinator.enqueue_create(make('a', 1000))
        self.auth.token = None

        self.assertTrue(coordinator.process_queue())
        strategy.apply_item.assert_not_called()
        self.assertEqual(self.store.queue_size(), 1)
        self.assertIsNone(self.store.get_metadata().last_sync_error)

    def test_single_flight(self):
        strategy = BlockingStrategy()
        coordinator = self.make_coordinator(strategy=strategy)
        coordinator.enqueue_create(make('a', 1000))

        results = []
        with patch.object(self.store, 'list_queue', wraps=self.store.list_queue) as list_queue:
            thread = threading.Thread(target=lambda: results.append(coordinator.process_queue()))
            thread.start()
            self.assertTrue(strategy.entered.wait(5))

            self.assertTrue(coordinator.is_syncing)
            self.assertFalse(coordinator.process_queue())
            self.assertFalse(coordinator.sync_now())

            strategy.release.set()
            thread.join(5)

        self.assertEqual(results, [True])
        self.assertEqual(list_queue.call_count, 1)
        self.assertEqual(len(strategy.applied), 1)
        self.assertFalse(coordinator.is_syncing)

    def test_resolves_and_persists_ledger_once(self):
        self.coordinator.enqueue_create(make('a', 1000))
        self.coordinator.process_queue()
        ledger_id = self.store.get_metadata().remote_ledger_id
        self.assertTrue(ledger_id)

        self.coordinator.enqueue_create(make('b', 1000))
        self.coordinator.process_queue()
        self.assertEqual(self.api.calls.count('find_or_create_ledger'), 1)
        self.assertEqual(self.store.get_metadata().remote_ledger_id, ledger_id)

    def test_pass_failure_is_recorded_not_raised(self):
        self.coordinator.enqueue_create(make('a', 1000))
        self.api.online = False
        self.assertTrue(self.coordinator.process_queue())
        self.assertIn('offline', self.store.get_metadata().last_sync_error)
        self.assertEqual(self.store.queue_size(), 1)
        self.assertFalse(self.coordinator.is_syncing)

    def test_queue_changed_signal(self):
        sizes = []
        self.coordinator.queueChanged.connect(sizes.append)
        self.coordinator.enqueue_create(make('a', 1000))
        self.coordinator.process_queue()
        self.assertEqual(sizes, [1, 0])


class MergeTests(SyncTestCase):

    def test_last_write_wins_remote(self):
        self.store.put(make('x', 100, description='local'))
        self.api.upsert(make('x', 200, description='remote'))
        self.coordinator.sync_now()
        self.assertEqual(self.store.get('x').description, 'remote')
        self.assertEqual(self.api.records()['x'].description, 'remote')

    def test_last_write_wins_local(self):
        self.store.put(make('x', 200, description='local'))
        self.api.upsert(make('x', 100, description='remote'))
        self.coordinator.sync_now()
        self.assertEqual(self.store.get('x').description, 'local')
        self.assertEqual(self.api.records()['x'].description, 'local')

    def test_tie_favors_local(self):
        self.store.put(make('x', 100, description='local'))
        self.api.upsert(make('x', 100, description='remote'))
        self.coordinator.sync_now()
        self.assertEqual(self.store.get('x').description, 'local')
        self.assertEqual(self.api.records()['x'].description, 'local')

    def test_union_of_both_sides(self):
        self.store.put(make('local-only', 100))
        self.api.upsert(make('remote-only', 100))
        self.coordinator.sync_now()
        self.assertEqual({t.id for t in self.store.list()}, {'local-only', 'remote-only'})
        self.assertEqual(set(self.api.records()), {'local-only', 'remote-only'})
        self.assertTrue(all(t.synced for t in self.store.list()))

    def test_pending_delete_is_not_resurrected(self):
        self.api.upsert(make('x', 100))
        self.store.put(make('x', 100))
        self.api.failing_ids = {'x'}
        self.coordinator.enqueue_delete('x')

        self.coordinator.sync_now()
        self.assertIsNone(self.store.get('x'))
        self.assertNotIn('x', self.api.records())
        self.assertEqual(self.store.pending_ids(Action.Delete), {'x'})

        self.api.failing_ids = set()
        self.coordinator.process_queue()
        self.assertEqual(self.store.queue_size(), 0)

    def test_remote_deletion_is_written_back(self):
        self.store.put(make('y', 100, synced=True))
        self.coordinator.sync_now()
        self.assertIn('y', self.api.records())

    def test_pending_update_is_drained_before_merge(self):
        self.api.upsert(make('x', 100, description='remote'))
        self.coordinator.enqueue_update(make('x', 100, description='edited'))
        self.coordinator.sync_now()
        self.assertEqual(self.api.records()['x'].description, 'edited')
        self.assertEqual(self.store.queue_size(), 0)
        self.assertTrue(self.store.get('x').synced)

    def test_newer_remote_drops_stale_queued_update(self):
        self.store.put(make('x', 1000, amount='1', synced=True))
        self.coordinator.enqueue_update(make('x', 1000, amount='2'))
        self.api.upsert(make('x', now_ms() + 10000, amount='3'))
        self.api.failing_ids = {'x'}

        self.coordinator.sync_now()
        self.assertEqual(self.store.queue_size(), 0)
        local = self.store.get('x')
        self.assertEqual(local.amount, Decimal('3'))
        self.assertTrue(local.synced)

        self.api.failing_ids = set()
        self.coordinator.process_queue()
        self.assertEqual(self.api.records()['x'].amount, Decimal('3'))

    def test_newer_remote_keeps_unrelated_queued_items(self):
        self.coordinator.enqueue_create(make('other', 1000))
        self.coordinator.enqueue_update(make('x', 1000, amount='2'))
        self.api.upsert(make('x', now_ms() + 10000, amount='3'))
        self.api.failing_ids = {'x', 'other'}

        self.coordinator.sync_now()
        self.assertEqual([i.transaction_id for i in self.store.list_queue()], ['other'])
        self.assertFalse(self.store.get('other').synced)
        self.assertTrue(self.store.get('x').synced)

    def test_merge_updates_metadata(self):
        self.assertEqual(SyncCoordinator.status_text(self.store.get_metadata()), 'Never synced')
        texts = []
        self.coordinator.statusChanged.connect(texts.append)

        self.coordinator.sync_now()
        meta = self.coordinator.get_sync_metadata()
        self.assertIsNotNone(meta.last_sync_timestamp)
        self.assertIsNone(meta.last_sync_error)
        self.assertIn(LAST_SYNC_KEY, self.api.get_metadata())
        self.assertEqual(texts[0], 'Syncing...')
        self.assertTrue(texts[-1].startswith('Last sync: 2'))


class SyncNowTests(SyncTestCase):

    def test_not_authenticated_is_raised(self):
        self.auth.token = None
        with self.assertRaises(status.NotAuthenticatedException):
            self.coordinator.sync_now()
        self.assertIsNone(self.store.get_metadata().last_sync_error)
        self.assertFalse(self.coordinator.is_syncing)

    def test_pass_failure_is_raised_and_recorded(self):
        self.api.online = False
        texts = []
        self.coordinator.statusChanged.connect(texts.append)

        with self.assertRaises(status.ServiceUnavailableException):
            self.coordinator.sync_now()
        self.assertFalse(self.coordinator.is_syncing)
        self.assertTrue(texts[-1].startswith('Last sync: error'))
        self.assertIsNotNone(self.store.get_metadata().last_sync_error)

        self.api.online = True
        self.assertTrue(self.coordinator.sync_now())
        self.assertIsNone(self.store.get_metadata().last_sync_error)

    def test_subscribers_notified_of_failure(self):
        calls = []
        self.coordinator.subscribe(lambda: calls.append(self.store.get_metadata().last_sync_error))
        self.api.online = False
        with self.assertRaises(status.ServiceUnavailableException):
            self.coordinator.sync_now()
        self.assertEqual(len(calls), 1)
        self.assertIsNotNone(calls[0])

    def test_busy_returns_false(self):
        self.coordinator._guard.acquire()
        try:
            self.assertFalse(self.coordinator.sync_now())
        finally:
            self.coordinator._guard.release()
        self.assertTrue(self.coordinator.sync_now())

    def test_subscribers(self):
        calls = []

        def broken():
            raise RuntimeError('listener failure')

        unsubscribe = self.coordinator.subscribe(lambda: calls.append('a'))
        self.coordinator.subscribe(broken)
        self.coordinator.sync_now()
        self.assertEqual(calls, ['a'])

        unsubscribe()
        unsubscribe()
        self.coordinator.sync_now()
        self.assertEqual(calls, ['a'])


class MutationTests(SyncTestCase):

    def test_create_stamps_missing_times(self):
        t = self.coordinator.enqueue_create(Transaction(id='n', amount=1, date='2025-01-01'))
        self.assertGreater(t.updated_at, 0)
        self.assertEqual(t.created_at, t.updated_at)
        self.assertEqual(self.store.get('n'), t)

    def test_update_refreshes_timestamp(self):
        t = self.coordinator.enqueue_create(make('u', 1000))
        updated = self.coordinator.enqueue_update(t.copy(description='changed'))
        self.assertGreater(updated.updated_at, t.updated_at)
        self.assertEqual(self.store.get('u').description, 'changed')
        self.assertEqual(self.store.queue_size(), 2)

    def test_toggle_cleared(self):
        self.coordinator.enqueue_create(make('c', 1000))
        self.assertTrue(self.coordinator.enqueue_toggle_cleared('c').cleared)
        self.assertFalse(self.coordinator.enqueue_toggle_cleared('c').cleared)
        with self.assertRaises(KeyError):
            self.coordinator.enqueue_toggle_cleared('missing')

    def test_delete(self):
        self.coordinator.enqueue_create(make('d', 1000))
        self.coordinator.enqueue_delete('d')
        self.assertIsNone(self.store.get('d'))
        self.assertEqual([i.action for i in self.store.list_queue()], [Action.Create, Action.Delete])

    def test_mutation_requests_drain(self):
        coordinator = SyncCoordinator(self.store, self.api, MockApiSyncStrategy(self.api), self.auth)
        try:
            with patch.object(coordinator, 'request_drain') as request_drain:
                coordinator.enqueue_create(make('m', 1000))
            request_drain.assert_called_once_with()
        finally:
            coordinator.shutdown(timeout_ms=5000)

    def test_mutations_succeed_offline(self):
        self.api.online = False
        self.auth.token = None
        self.coordinator.enqueue_create(make('o', 1000))
        self.coordinator.enqueue_toggle_cleared('o')
        self.assertEqual(self.store.queue_size(), 2)


class BackgroundTests(SyncTestCase):

    def test_request_drain(self):
        self.coordinator.enqueue_create(make('a', 1000))
        worker = self.coordinator.request_drain()
        self.assertIsNotNone(worker)
        self.assertTrue(worker.wait(5000))
        self.assertEqual(self.store.queue_size(), 0)

    def test_drain_requested_while_busy_runs_after(self):
        self.coordinator._guard.acquire()
        self.assertIsNone(self.coordinator.request_drain())
        self.assertTrue(self.coordinator._drain_requested)
        with patch.object(self.coordinator, '_start_worker') as start_worker:
            self.coordinator._release()
        start_worker.assert_called_once()
        self.assertFalse(self.coordinator._drain_requested)

    def test_drain_request_racing_release_is_not_lost(self):
        guard = ObservedLock()
        checked = threading.Event()
        racer = threading.Thread(target=self.enqueue_and_request, args=('b',))
        real_is_syncing = SyncCoordinator.is_syncing.fget

        def is_syncing(coordinator):
            busy = real_is_syncing(coordinator)
            if threading.current_thread() is racer and not checked.is_set():
                checked.set()
                # Hold the answer until the running drain released its guard
                guard.released.wait(1)
            return busy

        def start_racer():
            racer.start()
            self.assertTrue(checked.wait(5))

        coordinator = self.make_coordinator(strategy=RacingStrategy(self.api, start_racer))
        coordinator._guard = guard
        self.racing = coordinator
        self.store.record_mutation(OutboxItem.create(make('a', 1000)))

        with patch.object(SyncCoordinator, 'is_syncing', new=property(is_syncing)):
            self.assertTrue(coordinator.process_queue())
            racer.join(5)
            coordinator.shutdown(timeout_ms=5000)

        self.assertEqual(self.store.queue_size(), 0)
        self.assertEqual(set(self.api.records()), {'a', 'b'})

    def enqueue_and_request(self, tid: str) -> None:
        self.store.record_mutation(OutboxItem.create(make(tid, 1000)))
        self.racing.request_drain()

    def test_background_sync_signed_out_logs_no_error(self):
        self.auth.token = None
        with self.assertNoLogs(level='ERROR'):
            worker = self.coordinator.request_sync()
            self.assertTrue(worker.wait(5000))
        self.assertIsNone(self.store.get_metadata().last_sync_error)

    def test_request_sync_swallows_errors(self):
        self.api.online = False
        worker = self.coordinator.request_sync()
        self.assertTrue(worker.wait(5000))
        self.assertIsNotNone(self.store.get_metadata().last_sync_error)

        self.auth.token = None
        worker = self.coordinator.request_sync()
        self.assertTrue(worker.wait(5000))

    def test_connectivity_transition(self):
        with patch.object(self.coordinator, 'request_drain') as request_drain:
            self.coordinator.on_connectivity_changed(False)
            request_drain.assert_not_called()
            self.coordinator.on_connectivity_changed(True)
            request_drain.assert_called_once_with()

    def test_shutdown(self):
        calls = []
        self.coordinator.subscribe(lambda: calls.append(1))
        self.coordinator.start()
        self.assertTrue(self.coordinator.drain_timer.isActive())
        self.assertTrue(self.coordinator.auto_sync_timer.isActive())

        self.coordinator.shutdown(timeout_ms=5000)
        self.assertFalse(self.coordinator.drain_timer.isActive())
        self.assertFalse(self.coordinator.auto_sync_timer.isActive())
        self.assertIsNone(self.coordinator.request_drain())
        self.assertIsNone(self.coordinator.request_sync())

        self.coordinator.sync_now()
        self.assertEqual(calls, [])


class AutoSyncSettingsTests(SyncTestCase):

    def test_defaults(self):
        meta = self.coordinator.get_sync_metadata()
        self.assertIsInstance(meta, SyncMetadata)
        self.assertTrue(meta.auto_sync_enabled)
        self.assertEqual(self.coordinator.auto_sync_timer.interval(), 5 * 60 * 1000)

    def test_set_auto_sync(self):
        meta = self.coordinator.set_auto_sync(False)
        self.assertFalse(meta.auto_sync_enabled)
        self.assertFalse(self.coordinator.auto_sync_timer.isActive())
        self.assertFalse(self.store.get_metadata().auto_sync_enabled)

        self.coordinator.set_auto_sync(True)
        self.assertTrue(self.coordinator.auto_sync_timer.isActive())

    def test_set_auto_sync_interval(self):
        meta = self.coordinator.set_auto_sync_interval(15)
        self.assertEqual(meta.auto_sync_interval_minutes, 15)
        self.assertEqual(self.coordinator.auto_sync_timer.interval(), 15 * 60 * 1000)
        for value in (0, -1, True, 1.5, '10'):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    self.coordinator.set_auto_sync_interval(value)

    def test_interval_survives_restart(self):
        self.coordinator.set_auto_sync_interval(30)
        coordinator = self.make_coordinator()
        self.assertEqual(coordinator.auto_sync_timer.interval(), 30 * 60 * 1000)


class SheetsEndToEndTests(SyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.google = FakeGoogle()
        self.sheets = SheetsLedger(
            self.auth.get_usable_credential,
            name='Expense Manager Sync',
            wait_seconds=0,
            build_service=self.google.build,
        )
        self.coordinator.shutdown()
        self.coordinator = self.make_coordinator(strategy=SheetsSyncStrategy(self.sheets), ledger=self.sheets)

    def test_full_pass(self):
        self.coordinator.enqueue_create(make('t1', 1000, amount=12.5, created_at=1000))
        self.coordinator.enqueue_create(make('t2', 2000, date='2025-02-01', created_at=2000))
        self.coordinator.enqueue_delete('t1')

        self.assertTrue(self.coordinator.sync_now())
        ledger_id = self.store.get_metadata().remote_ledger_id
        rows = self.google.rows(ledger_id, 'Transactions')
        self.assertEqual(rows[0], HEADER)
        self.assertEqual([r[0] for r in rows[1:] if r and r[0]], ['t2'])
        self.assertEqual(self.store.queue_size(), 0)
        self.assertTrue(self.store.get('t2').synced)
        self.assertIn(LAST_SYNC_KEY, self.sheets.get_metadata())

    def test_remote_edit_is_pulled(self):
        self.coordinator.enqueue_create(make('t1', 1000, created_at=1000))
        self.coordinator.sync_now()

        ledger_id = self.store.get_metadata().remote_ledger_id
        rows = self.google.rows(ledger_id, 'Transactions')
        rows[1][4] = '99.99'
        rows[1][7] = '5000'

        self.coordinator.sync_now()
        local = self.store.get('t1')
        self.assertEqual(local.amount, Decimal('99.99'))
        self.assertEqual(local.updated_at, 5000)
