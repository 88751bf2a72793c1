"""Settings library for the sync engine.

Provides:
    - Schema validation for the sections of settings.json.
    - Loading, saving, reverting, and managing engine settings.
    - Loading and validating the optional Google client_secret.json.
    - Resolution of the config, auth and database paths.
"""

import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'ExpenseSync'

#: Environment variable that overrides the application data directory.
CONFIG_DIR_ENV: str = 'EXPENSESYNC_CONFIG_DIR'

BACKENDS: List[str] = ['sheets', 'mock']

SETTINGS_SCHEMA: Dict[str, Any] = {
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'backend': {'type': str, 'required': True, 'allowed_values': BACKENDS},
            'auto_sync_enabled': {'type': bool, 'required': True},
            'auto_sync_interval_minutes': {'type': int, 'required': True, 'min': 1},
            'drain_interval_seconds': {'type': int, 'required': True, 'min': 1},
        }
    },
    'spreadsheet': {
        'type': dict,
        'required': True,
        'item_schema': {
            'name': {'type': str, 'required': True, 'non_empty': True},
            'worksheet': {'type': str, 'required': True, 'non_empty': True},
            'metadata_worksheet': {'type': str, 'required': True, 'non_empty': True},
        }
    },
    'network': {
        'type': dict,
        'required': True,
        'item_schema': {
            'probe_host': {'type': str, 'required': True, 'non_empty': True},
            'probe_port': {'type': int, 'required': True, 'min': 1},
            'probe_timeout': {'type': float, 'required': True, 'min': 0},
            'check_interval_seconds': {'type': int, 'required': True, 'min': 1},
            'max_attempts': {'type': int, 'required': True, 'min': 1},
            'wait_seconds': {'type': float, 'required': True, 'min': 0},
            'refresh_margin_seconds': {'type': int, 'required': True, 'min': 0},
        }
    },
}


def _check_type(value: Any, expected: type) -> bool:
    # bool is an int subclass, and JSON integers are acceptable floats
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, expected)


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a single settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Dict describing required fields, types and value constraints.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing or a value is out of range.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs.get('required') and field not in section:
            msg: str = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        if not _check_type(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)
        if 'allowed_values' in field_specs and value not in field_specs['allowed_values']:
            msg = f'Section "{section_name}" field "{field}" must be one of {field_specs["allowed_values"]}.'
            logging.error(msg)
            raise ValueError(msg)
        if 'min' in field_specs and value < field_specs['min']:
            msg = f'Section "{section_name}" field "{field}" must be >= {field_specs["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)
        if field_specs.get('non_empty') and not value.strip():
            msg = f'Section "{section_name}" field "{field}" must not be empty.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default settings exist.

    Paths live under the Qt application data location unless the
    ``EXPENSESYNC_CONFIG_DIR`` environment variable points elsewhere.
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        if root_dir is None:
            root_dir = os.environ.get(CONFIG_DIR_ENV, '')
        if not root_dir:
            root_dir = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(root_dir)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'ledger.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists, create the config directories and copy default settings.

        Raises:
            FileNotFoundError: If the settings template is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        if not self.settings_template.exists():
            msg: str = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for path in (self.config_dir, self.auth_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the default template file."""
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save settings.json sections and to read
    the optional client_secret.json used by the sign-in flow.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, root_dir: Optional[str] = None) -> None:
        super().__init__(root_dir=root_dir)

        self.settings_data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    def init_data(self) -> None:
        """Reload settings and client_secret data from disk."""
        self.load_settings()
        self.load_client_secret()

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If settings.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException(str(self.settings_path))

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
        except (ValueError, TypeError) as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def load_client_secret(self) -> Dict[str, Any]:
        """Load client_secret.json from disk if present.

        The client secret is only needed to sign in, so a missing file is not an error here.

        Returns:
            The loaded client secret data, or an empty dict.

        Raises:
            status.ClientSecretInvalidException: If the file exists but cannot be parsed or validated.
        """
        if not self.client_secret_path.exists():
            logging.debug(f'No client_secret found at "{self.client_secret_path}"')
            self.client_secret_data = {}
            return self.client_secret_data

        logging.debug(f'Loading client_secret from "{self.client_secret_path}"')
        try:
            with self.client_secret_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (ValueError, json.JSONDecodeError) as ex:
            raise status.ClientSecretInvalidException(str(ex)) from ex

        self.validate_client_secret(data)
        self.client_secret_data = data
        return self.client_secret_data

    def validate_client_secret(self, data: Optional[Dict[str, Any]] = None) -> str:
        """Validate that the client configuration contains required OAuth credentials.

        Args:
            data (dict, optional): Client secret data to validate. Defaults to loaded client_secret_data.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            status.ClientSecretInvalidException: If no valid section exists or required fields are missing.
        """
        if data is None:
            data = self.client_secret_data

        key = next((k for k in ('installed', 'web') if k in data), None)
        if not key:
            raise status.ClientSecretInvalidException('Missing "installed" or "web" section in client_secret.')

        config_section: Dict[str, Any] = data[key]
        missing: List[str] = [k for k in self.required_client_secret_keys if k not in config_section]
        if missing:
            raise status.ClientSecretInvalidException(
                f'Missing required fields in the \'{key}\' section: {missing}.'
            )
        return key

    def validate_settings_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings data against SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.settings_data.

        Raises:
            ValueError: If a required section or field is missing, or a value is out of range.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.settings_data
        if not isinstance(data, dict) or not data:
            raise ValueError('Settings data is empty.')

        for section_name, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and section_name not in data:
                raise ValueError(f'Missing required section: {section_name}')
            if section_name not in data:
                continue
            if not isinstance(data[section_name], specs['type']):
                raise TypeError(
                    f'Section "{section_name}" must be {specs["type"]}, got {type(data[section_name])}.'
                )
            _validate_section(section_name, data[section_name], specs['item_schema'])

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Args:
            section_name: Section name ('client_secret' or a key of SETTINGS_SCHEMA).

        Returns:
            A copied dict of the requested section.

        Raises:
            KeyError: If section_name is unknown.
        """
        if section_name == 'client_secret':
            return self.client_secret_data.copy()
        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a settings section.

        The previous section is restored when validation fails.

        Args:
            section_name: Section to update ('client_secret' or a key of SETTINGS_SCHEMA).
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unknown or new_data is invalid.
            TypeError: If new_data contains wrongly typed values.
        """
        if section_name == 'client_secret':
            logging.debug('Setting entire client_secret data.')
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section('client_secret')
            return

        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data.get(section_name, {}).copy()

        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

    def get_value(self, section_name: str, key: str) -> Any:
        """Return a single value from a settings section."""
        return self.settings_data[section_name][key]

    def set_value(self, section_name: str, key: str, value: Any) -> None:
        """Set a single value of a settings section and persist the section."""
        data = self.get_section(section_name)
        data[key] = value
        self.set_section(section_name, data)

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is not present in the template.
        """
        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.settings_data[section_name] = template_data[section_name]
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single section to its corresponding file.

        Args:
            section_name: The section to save ('client_secret' or a settings key).

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name == 'client_secret':
            logging.debug(f'Saving client_secret to "{self.client_secret_path}"')
            self.validate_client_secret(self.client_secret_data)
            with self.client_secret_path.open('w', encoding='utf-8') as f:
                json.dump(self.client_secret_data, f, indent=4, ensure_ascii=False)
            return

        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.settings_data[section_name]

        logging.debug(f'Saving section "{section_name}" to "{self.settings_path}"')
        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
