"""
Google OAuth2 credential management for the sync engine.

The engine never prompts on its own. :meth:`AuthManager.get_usable_credential` loads
and, when possible, silently refreshes the stored credentials, and returns ``None``
when only an interactive sign-in could produce a usable token. Callers treat ``None``
as "remote unreachable" and retry later.
"""

import datetime
import logging
import pathlib
import threading
from typing import Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from PySide6 import QtCore

from . import service
from ..status import status

DEFAULT_SCOPES = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/drive.file',
]

REFRESH_MARGIN_SECONDS: int = 300


def _utcnow() -> datetime.datetime:
    # google-auth keeps expiry as a naive UTC datetime
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class AuthManager(QtCore.QObject):
    """Manages OAuth2 credentials with thread-safe refresh.

    Args:
        settings: The :class:`~ExpenseSync.settings.lib.SettingsAPI` holding the credential and client secret paths.
        refresh_margin_seconds: Credentials expiring within this window are refreshed early.

    Signals:
        authenticated (): Emitted after a sign-in or a successful refresh.
        signedOut (): Emitted after the stored credentials were removed.
    """
    authenticated = QtCore.Signal()
    signedOut = QtCore.Signal()

    def __init__(self, settings, refresh_margin_seconds: int = REFRESH_MARGIN_SECONDS,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.settings = settings
        self.refresh_margin_seconds = refresh_margin_seconds
        self._lock = threading.Lock()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None

    @property
    def creds_path(self) -> pathlib.Path:
        return pathlib.Path(self.settings.creds_path)

    def _needs_refresh(self, creds: google.oauth2.credentials.Credentials) -> bool:
        if creds.expired or not creds.token:
            return True
        if creds.expiry is None:
            return False
        return creds.expiry - _utcnow() < datetime.timedelta(seconds=self.refresh_margin_seconds)

    def _load(self) -> Optional[google.oauth2.credentials.Credentials]:
        if not self.creds_path.exists():
            logging.debug('No stored credentials found.')
            return None
        try:
            creds = google.oauth2.credentials.Credentials.from_authorized_user_file(
                str(self.creds_path), scopes=DEFAULT_SCOPES
            )
        except (ValueError, KeyError, OSError) as ex:
            # Corrupt file: remove it so the next sign-in starts clean
            logging.warning(f'{status.get_message(status.Status.CredsInvalid)} ({ex})')
            self.creds_path.unlink(missing_ok=True)
            return None
        logging.debug(f'Credentials loaded from {self.creds_path}.')
        return creds

    def get_usable_credential(self) -> Optional[google.oauth2.credentials.Credentials]:
        """
        Return credentials that are valid for at least the refresh margin, or None.

        Near-expired or expired credentials are refreshed without any UI when a refresh
        token is available. A failed refresh of credentials that are still valid returns
        them unchanged.

        Returns:
            The usable credentials, or None if interactive sign-in is required.
        """
        refreshed = False
        with self._lock:
            if self._creds is None:
                self._creds = self._load()
            creds = self._creds
            if creds is None:
                return None

            if self._needs_refresh(creds):
                if not creds.refresh_token:
                    logging.info('Credentials expired and cannot be refreshed; sign-in required.')
                    return creds if creds.valid else None
                try:
                    creds.refresh(google.auth.transport.requests.Request())
                except (google.auth.exceptions.RefreshError, google.auth.exceptions.TransportError) as ex:
                    logging.warning(f'Failed to refresh credentials: {ex}')
                    return creds if creds.valid else None
                self._save(creds)
                refreshed = True
                logging.debug('Credentials refreshed.')

        if refreshed:
            self.authenticated.emit()
        return creds if creds.valid else None

    def is_signed_in(self) -> bool:
        """Return True if credentials are stored, usable or not."""
        return self._creds is not None or self.creds_path.exists()

    def _save(self, creds: google.oauth2.credentials.Credentials) -> None:
        self.creds_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.creds_path, 'w', encoding='utf-8') as token_file:
            token_file.write(creds.to_json())
        logging.debug(f'Credentials saved to {self.creds_path}.')

    def sign_in(self) -> google.oauth2.credentials.Credentials:
        """
        Run the installed-app OAuth flow and store the resulting credentials.

        This opens the user's browser and blocks until the flow finishes.

        Raises:
            status.ClientSecretNotFoundException: If no client secret is configured.
            status.ClientSecretInvalidException: If the client secret is malformed.
            status.NotAuthenticatedException: If the flow fails or is cancelled.
        """
        client_config = self.settings.get_section('client_secret')
        if not client_config:
            raise status.ClientSecretNotFoundException(str(self.settings.client_secret_path))
        self.settings.validate_client_secret(client_config)

        logging.debug('Starting OAuth flow...')
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=DEFAULT_SCOPES)
        try:
            creds = flow.run_local_server(port=0)
        except (OSError, ValueError, google.auth.exceptions.GoogleAuthError) as ex:
            raise status.NotAuthenticatedException(f'OAuth flow failed: {ex}') from ex
        if not creds or not creds.token:
            raise status.NotAuthenticatedException('Authentication did not complete successfully.')

        with self._lock:
            self._save(creds)
            self._creds = creds
        service.clear_service()

        logging.info('Signed in.')
        self.authenticated.emit()
        return creds

    def sign_out(self) -> None:
        """
        Delete stored credentials and drop cached API clients.
        """
        with self._lock:
            self._creds = None
            if self.creds_path.exists():
                logging.debug(f'Deleting {self.creds_path}...')
                self.creds_path.unlink()
            else:
                logging.debug('No credentials file found. No action taken.')
        service.clear_service()
        self.signedOut.emit()
