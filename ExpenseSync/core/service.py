"""Google API plumbing shared by the remote ledger.

Provides the cached Sheets/Drive client factory, a request executor that retries
transient failures, and the :class:`AsyncWorker` thread the coordinator uses to run
sync passes off the caller's thread.
"""

import logging
import socket
import ssl
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httplib2
from PySide6 import QtCore
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..status import status

MAX_ATTEMPTS: int = 3
WAIT_SECONDS: float = 1.0
BACKOFF_FACTOR: float = 1.5

#: HTTP statuses worth retrying
TRANSIENT_HTTP_STATUS = {408, 429, 500, 502, 503, 504}

# Cached API clients keyed by (api, version), with the credentials they were built for
_cached_services: Dict[Tuple[str, str], Tuple[Any, Any]] = {}
_cache_lock = threading.Lock()


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Status exceptions are never retried; they describe a state another attempt
    cannot fix.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args

        self.max_attempts = kwargs.pop('max_attempts', 1)
        self.wait_seconds = kwargs.pop('wait_seconds', WAIT_SECONDS)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(result)
                return
            except status.BaseStatusException as ex:
                self.errorOccurred.emit(ex)
                return
            except Exception as ex:
                logging.debug(f'Worker attempt {attempts}/{self.max_attempts} failed: {ex}')
                last_exception = ex
                if attempts < self.max_attempts:
                    time.sleep(self.wait_seconds)
        self.errorOccurred.emit(last_exception)


def get_service(api: str, version: str, credentials: Any) -> Any:
    """
    Builds (or returns cached) Google API client.

    The cached client is rebuilt when called with different credentials, e.g. after
    signing in again.

    Args:
        api: API name, e.g. ``'sheets'`` or ``'drive'``.
        version: API version, e.g. ``'v4'``.
        credentials: google-auth credentials.

    Raises:
        status.ServiceUnavailableException: If the client cannot be built.
    """
    key = (api, version)
    with _cache_lock:
        cached = _cached_services.get(key)
        if cached is not None and cached[0] is credentials:
            return cached[1]
        try:
            service = build(api, version, credentials=credentials, cache_discovery=False)
        except (HttpError, httplib2.HttpLib2Error, OSError) as ex:
            raise status.ServiceUnavailableException(f'Could not build the {api} {version} client: {ex}') from ex
        logging.debug(f'Google {api} {version} service client created successfully.')
        _cached_services[key] = (credentials, service)
        return service


def clear_service() -> None:
    """
    Clears the cached API clients.
    """
    with _cache_lock:
        for _, service in _cached_services.values():
            try:
                service.close()
            except (AttributeError, OSError) as ex:
                logging.debug(f'Failed closing cached service client: {ex}')
        _cached_services.clear()


def http_status(ex: HttpError) -> Optional[int]:
    return ex.resp.status if getattr(ex, 'resp', None) is not None else None


def is_transient(ex: BaseException) -> bool:
    """Return True if a failed request is worth retrying."""
    if isinstance(ex, HttpError):
        return http_status(ex) in TRANSIENT_HTTP_STATUS
    return isinstance(ex, (socket.timeout, TimeoutError, ssl.SSLError, ConnectionError, httplib2.HttpLib2Error))


def execute(request: Any,
            description: str = 'request',
            max_attempts: int = MAX_ATTEMPTS,
            wait_seconds: float = WAIT_SECONDS) -> Any:
    """
    Executes a Google API request, retrying transient failures.

    The wait between attempts grows by ``BACKOFF_FACTOR`` after each failure.

    Args:
        request: A prepared ``HttpRequest``, e.g. ``service.spreadsheets().get(...)``.
        description: Human readable name of the request, used in logs and errors.
        max_attempts: Total attempts before giving up.
        wait_seconds: Initial wait between attempts.

    Returns:
        The decoded response.

    Raises:
        status.ServiceUnavailableException: If the request fails for good.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return request.execute()
        except (HttpError, OSError, httplib2.HttpLib2Error) as ex:
            if is_transient(ex) and attempt < max_attempts:
                logging.warning(
                    f'{description} failed (attempt {attempt}/{max_attempts}): {ex}. '
                    f'Retrying in {wait_seconds:.1f} seconds...'
                )
                time.sleep(wait_seconds)
                wait_seconds *= BACKOFF_FACTOR
                continue

            if isinstance(ex, HttpError):
                code = http_status(ex)
                if code == 404:
                    raise status.ServiceUnavailableException(f'{description}: not found (HTTP 404).') from ex
                if code == 403:
                    raise status.ServiceUnavailableException(
                        f'{description}: access denied (HTTP 403). '
                        'Check that the signed-in account can access the ledger.'
                    ) from ex
                raise status.ServiceUnavailableException(f'{description}: HTTP {code}: {ex}') from ex
            if isinstance(ex, (socket.timeout, TimeoutError)):
                raise status.ServiceUnavailableException(f'{description}: timeout: {ex}') from ex
            if isinstance(ex, ssl.SSLError):
                raise status.ServiceUnavailableException(f'{description}: SSL error: {ex}') from ex
            raise status.ServiceUnavailableException(f'{description}: {ex}') from ex


def idx_to_col(idx: int) -> str:
    """
    Converts a zero-based column index to an A1 column letter.
    """
    s = ''
    n = idx + 1
    while n:
        n, r = divmod(n - 1, 26)
        s = chr(65 + r) + s
    return s
