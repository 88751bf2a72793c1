"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible engine states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions raised by the store, the auth gate and the remote ledger
"""
import enum
import logging
from typing import Dict, Optional


class Status(enum.StrEnum):
    """Enumeration of engine status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote ledger status
    LedgerNotFound = enum.auto()
    LedgerProvisioningFailed = enum.auto()

    # Service status
    ServiceUnavailable = enum.auto()

    # Local store status
    StoreInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the logs.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.ClientSecretNotFound: 'Could not find the google client secret. Have you set up a valid Google client secret?',
    Status.ClientSecretInvalid: 'Could not verify the client secret. Have you set up a valid Google client secret?',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again to your Google account.',
    Status.NotAuthenticated: 'Not authenticated. Sign in to your Google account to sync.',

    Status.LedgerNotFound: 'The remote ledger has not been opened. Run a sync to provision it.',
    Status.LedgerProvisioningFailed: 'Could not find or create the remote ledger spreadsheet.',

    Status.ServiceUnavailable: 'The remote ledger service is unavailable. Please check your connection.',

    Status.StoreInvalid: 'The local record store is invalid or could not be opened.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in ExpenseSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.
        detail (str): The additional context given when raised, if any.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: Optional[str] = None):
        self.status_message = get_message(self.status)
        self.detail = message or ''
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings are invalid or malformed."""
    status = Status.SettingsInvalid


class ClientSecretNotFoundException(BaseStatusException):
    """Exception raised when the Google OAuth client secret file cannot be found."""
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(BaseStatusException):
    """Exception raised when the Google OAuth client secret is invalid or malformed."""
    status = Status.ClientSecretInvalid


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored Google credentials are corrupt."""
    status = Status.CredsInvalid


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when no usable credential is available for an explicit sync."""
    status = Status.NotAuthenticated


class LedgerNotFoundException(BaseStatusException):
    """Exception raised when a ledger operation runs before a ledger was opened."""
    status = Status.LedgerNotFound


class LedgerProvisioningFailedException(BaseStatusException):
    """Exception raised when the remote ledger cannot be discovered or created."""
    status = Status.LedgerProvisioningFailed


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when the remote ledger service is unavailable."""
    status = Status.ServiceUnavailable


class StoreInvalidException(BaseStatusException):
    """Exception raised when the local record store is invalid or corrupted."""
    status = Status.StoreInvalid
