"""Tests for ExpenseSync.core.engine."""
from ExpenseSync.core.api import MockApi
from ExpenseSync.core.engine import Engine
from ExpenseSync.core.ledger import SheetsLedger
from ExpenseSync.core.models import Transaction
from ExpenseSync.core.strategies import MockApiSyncStrategy, SheetsSyncStrategy
from ExpenseSync.settings.lib import SettingsAPI
from tests.base import BaseTestCase


class EngineTests(BaseTestCase):

    def make_engine(self, **kwargs) -> Engine:
        engine = Engine(self.settings, **kwargs)
        self.addCleanup(engine.shutdown)
        return engine

    def test_sheets_backend_from_settings(self):
        self.settings.set_value('spreadsheet', 'name', 'My Ledger')
        self.settings.set_value('sync', 'drain_interval_seconds', 15)
        engine = self.make_engine()

        self.assertIsInstance(engine.ledger, SheetsLedger)
        self.assertEqual(engine.ledger.name, 'My Ledger')
        self.assertIsInstance(engine.strategy, SheetsSyncStrategy)
        self.assertIs(engine.coordinator.auth, engine.auth)
        self.assertEqual(engine.coordinator.drain_timer.interval(), 15000)
        self.assertEqual(engine.store.db_path, self.settings.db_path)
        self.assertEqual(engine.monitor.host, 'sheets.googleapis.com')

    def test_mock_backend(self):
        self.settings.set_value('sync', 'backend', 'mock')
        engine = self.make_engine()
        self.assertIsInstance(engine.ledger, MockApi)
        self.assertIsInstance(engine.strategy, MockApiSyncStrategy)
        self.assertIs(engine.coordinator.auth, engine.ledger)

    def test_online_transition_drains(self):
        self.settings.set_value('sync', 'backend', 'mock')
        engine = self.make_engine()
        engine.coordinator.drain_on_mutation = False
        engine.coordinator.enqueue_create(Transaction.new('1', '2025-05-01'))

        engine.monitor.set_online(True)
        engine.coordinator.shutdown(timeout_ms=5000)
        self.assertEqual(engine.store.queue_size(), 0)

    def test_mock_backend_syncs(self):
        self.settings.set_value('sync', 'backend', 'mock')
        engine = self.make_engine()
        engine.coordinator.drain_on_mutation = False
        engine.coordinator.enqueue_create(Transaction.new('4.20', '2025-05-01', description='Tea'))
        self.assertTrue(engine.coordinator.sync_now())
        self.assertEqual(len(engine.ledger.records()), 1)
        self.assertEqual(engine.store.queue_size(), 0)

    def test_auto_sync_changes_are_saved_to_settings(self):
        self.settings.set_value('sync', 'backend', 'mock')
        engine = self.make_engine()
        engine.coordinator.set_auto_sync_interval(20)
        engine.coordinator.set_auto_sync(False)

        reloaded = SettingsAPI(self.root_dir)
        self.assertEqual(reloaded.get_value('sync', 'auto_sync_interval_minutes'), 20)
        self.assertFalse(reloaded.get_value('sync', 'auto_sync_enabled'))

    def test_existing_store_overrides_settings(self):
        self.store.set_metadata(auto_sync_interval_minutes=45)
        self.settings.set_value('sync', 'auto_sync_interval_minutes', 10)
        engine = self.make_engine()
        self.assertEqual(engine.coordinator.auto_sync_timer.interval(), 45 * 60 * 1000)
        self.assertEqual(self.settings.get_value('sync', 'auto_sync_interval_minutes'), 45)
