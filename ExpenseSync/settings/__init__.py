"""
Settings package for ExpenseSync.

Modules:

- :mod:`ExpenseSync.settings.lib` – Config paths, the settings schema, and the :class:`SettingsAPI` used by the engine.
"""
