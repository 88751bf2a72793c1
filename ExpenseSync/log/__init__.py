"""
Logging subsystem for the sync engine.

Modules:

- :mod:`ExpenseSync.log.log` – Root logger setup, the in-memory :class:`TankHandler`, and the Qt message bridge.
"""
