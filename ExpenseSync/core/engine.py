"""Application setup for the headless sync engine.

This module provides:
    - Application: QCoreApplication configured with the engine's metadata
    - Engine: builds the store, auth gate, ledger, strategy, coordinator and connectivity
      monitor from the settings and wires their signals together
"""
import logging
import sys
from typing import Any, Optional, Sequence

from PySide6 import QtCore

from .api import MockApi
from .auth import AuthManager
from .database import RecordStore
from .ledger import LedgerAdapter, SheetsLedger
from .network import ConnectivityMonitor
from .strategies import get_strategy
from .sync import SyncCoordinator
from .. import __version__


class Application(QtCore.QCoreApplication):
    """Event loop for the engine's timers and cross-thread signals."""

    def __init__(self, argv: Optional[Sequence[str]] = None) -> None:
        if argv is None:
            argv = sys.argv
        super().__init__(list(argv))

        from ..settings import lib
        self.setApplicationName(lib.app_name)
        self.setOrganizationName('')
        self.setApplicationVersion(__version__)


class Engine(QtCore.QObject):
    """Owns and connects the sync components.

    Args:
        settings: The :class:`~ExpenseSync.settings.lib.SettingsAPI` to configure from.
        ledger: Use this ledger instead of building one for the configured backend.
    """

    def __init__(self, settings: Any, ledger: Optional[LedgerAdapter] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.settings = settings

        sync_config = settings.get_section('sync')
        sheet_config = settings.get_section('spreadsheet')
        net_config = settings.get_section('network')
        backend = sync_config['backend']

        self.store = RecordStore(
            settings.db_path,
            auto_sync_enabled=sync_config['auto_sync_enabled'],
            auto_sync_interval_minutes=sync_config['auto_sync_interval_minutes'],
            parent=self,
        )
        self.auth = AuthManager(
            settings,
            refresh_margin_seconds=net_config['refresh_margin_seconds'],
            parent=self,
        )

        if ledger is None:
            if backend == 'mock':
                ledger = MockApi()
            else:
                ledger = SheetsLedger(
                    self.auth.get_usable_credential,
                    name=sheet_config['name'],
                    worksheet=sheet_config['worksheet'],
                    metadata_worksheet=sheet_config['metadata_worksheet'],
                    max_attempts=net_config['max_attempts'],
                    wait_seconds=net_config['wait_seconds'],
                )
        self.ledger = ledger
        self.strategy = get_strategy(backend, ledger)

        gate = ledger if isinstance(ledger, MockApi) else self.auth
        self.coordinator = SyncCoordinator(
            self.store,
            self.ledger,
            self.strategy,
            gate,
            drain_interval_seconds=sync_config['drain_interval_seconds'],
            parent=self,
        )
        self.monitor = ConnectivityMonitor(
            net_config['probe_host'],
            port=net_config['probe_port'],
            timeout=net_config['probe_timeout'],
            interval_seconds=net_config['check_interval_seconds'],
            parent=self,
        )

        meta = self.store.get_metadata()
        self.save_auto_sync(meta.auto_sync_enabled, meta.auto_sync_interval_minutes)
        self._connect_signals()
        logging.debug(f'Sync engine created with the "{backend}" backend.')

    def _connect_signals(self) -> None:
        self.monitor.onlineChanged.connect(self.coordinator.on_connectivity_changed)
        self.auth.authenticated.connect(self.coordinator.request_drain)
        self.coordinator.autoSyncChanged.connect(self.save_auto_sync)
        self.coordinator.statusChanged.connect(lambda text: logging.info(text))

    @QtCore.Slot(bool, int)
    def save_auto_sync(self, enabled: bool, minutes: int) -> None:
        """Mirror the auto sync state of the record store into the settings file.

        The store's metadata row is authoritative once created. The settings values
        only seed a new store.
        """
        data = self.settings.get_section('sync')
        if data['auto_sync_enabled'] == enabled and data['auto_sync_interval_minutes'] == minutes:
            return
        data['auto_sync_enabled'] = enabled
        data['auto_sync_interval_minutes'] = minutes
        self.settings.set_section('sync', data)
        logging.debug('Auto sync settings updated from the record store.')

    def start(self) -> None:
        self.coordinator.start()
        self.monitor.start()

    def shutdown(self) -> None:
        logging.debug('Shutting down the sync engine.')
        self.monitor.stop()
        self.coordinator.shutdown()
