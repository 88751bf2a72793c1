"""
ExpenseSync: offline-first sync engine for personal expense records.

This package provides:

- :mod:`ExpenseSync.core` – Local record store, outbox, Google Sheets ledger, sync strategies and the sync coordinator.
- :mod:`ExpenseSync.settings` – Settings management with schema validation.
- :mod:`ExpenseSync.status` – Status codes and status exceptions.
- :mod:`ExpenseSync.log` – Logging setup and the in-memory log tank.

Use :func:`ExpenseSync.exec_` to run the engine headless.
"""
import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'ExpenseSync: offline-first expense records synchronized with a Google Sheets ledger.'
__url__ = 'https://github.com/wgergely/ExpenseTracker'
__email__ = 'hello+ExpenseTracker@gergely-wootsch.com'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run the sync engine and enter the Qt event loop.

    Creates the core application, builds the engine from the user settings and starts
    the timers and the connectivity monitor. The engine is shut down when the event
    loop quits.
    """
    from .core import engine
    from .settings import lib

    app = engine.Application(sys.argv)
    e = engine.Engine(lib.settings, parent=app)
    app.aboutToQuit.connect(e.shutdown)

    QtCore.QTimer.singleShot(100, e.start)

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
