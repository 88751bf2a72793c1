"""
Core package for ExpenseSync providing the sync engine.

This package includes:

- :mod:`ExpenseSync.core.models` – Transaction, outbox item and sync metadata types.
- :mod:`ExpenseSync.core.database` – Local SQLite record store, outbox queue and sync metadata.
- :mod:`ExpenseSync.core.service` – Google API client cache, retrying request execution and worker threads.
- :mod:`ExpenseSync.core.auth` – Google OAuth2 credential loading, refresh and sign-in.
- :mod:`ExpenseSync.core.network` – Connectivity probing and online/offline signals.
- :mod:`ExpenseSync.core.ledger` – Ledger adapter contract and the Google Sheets ledger.
- :mod:`ExpenseSync.core.api` – In-memory mock backend.
- :mod:`ExpenseSync.core.strategies` – Per-item push strategies for each backend.
- :mod:`ExpenseSync.core.sync` – The sync coordinator: outbox drain, merge pass and triggers.
- :mod:`ExpenseSync.core.engine` – Application setup and component wiring.
"""
