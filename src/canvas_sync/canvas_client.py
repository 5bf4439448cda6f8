#!/usr/bin/env python3
"""Canvas REST API client for Canvas Sync."""

import logging
import os
import re
import time
from functools import wraps
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Union
from urllib.parse import urlparse

import requests
import certifi

from .models import MalformedRecordError
from .path_utils import SecurityError


logger = logging.getLogger(__name__)


DEFAULT_PAGE_SIZE = 200
REQUEST_TIMEOUT = 30


class CanvasAPIError(Exception):
    """Base class for errors raised by the Canvas client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthInvalidError(CanvasAPIError):
    """The access token was rejected. Fatal for a whole sync run."""
    pass


class NotFoundError(CanvasAPIError):
    """The requested resource does not exist."""
    pass


class TransportError(CanvasAPIError):
    """Any other network or protocol failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message, status_code)
        self.retryable = retryable


# Errors that only affect the branch that raised them
RECOVERABLE_ERRORS = (TransportError, NotFoundError, MalformedRecordError, SecurityError)


def retry_on_failure(max_retries: int = 3):
    """Decorator to retry a request on transient transport failures.

    Uses exponential backoff (1s, 2s, 4s, ...). Auth and not-found errors
    are raised immediately.

    Args:
        max_retries: Maximum number of attempts
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except TransportError as e:
                    if not e.retryable or attempt == max_retries - 1:
                        logger.error(f"{func.__name__} failed after {attempt + 1} attempt(s): {e}")
                        raise
                    wait_time = 2 ** attempt
                    logger.warning(f"{func.__name__} attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
                    time.sleep(wait_time)
        return wrapper
    return decorator


class CanvasClient:
    """Client for the Canvas LMS REST API.

    Serves as the paged fetcher for the crawler, builder and differ:
    ``fetch_page`` returns one bounded page of records and ``fetch_one``
    returns a single record. Endpoints may be relative to ``/api/v1`` or
    absolute URLs handed out by Canvas itself.
    """

    API_PREFIX = "/api/v1"

    def __init__(self, root_url: str, access_token: str,
                 page_size: int = DEFAULT_PAGE_SIZE, timeout: int = REQUEST_TIMEOUT):
        """Initialize Canvas client.

        Args:
            root_url: Base URL of the Canvas instance (e.g. https://school.instructure.com)
            access_token: Canvas access token
            page_size: Default number of records per page
            timeout: Per-request timeout in seconds
        """
        if not root_url.startswith(('http://', 'https://')):
            root_url = f"https://{root_url}"
        self.root_url = root_url.rstrip('/')
        self.access_token = access_token
        self.page_size = page_size
        self.timeout = timeout
        self._session = requests.Session()
        self._session.verify = certifi.where()  # Explicit certificate validation

    def _sanitize_for_log(self, text: str) -> str:
        """Remove sensitive data from log output."""
        text = re.sub(r'(access_token)["\']?\s*[:=]\s*["\']?[\w\-\.~]+',
                      r'\1=***REDACTED***', text, flags=re.IGNORECASE)
        text = re.sub(r'Bearer\s+[\w\-\.~]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)
        return text

    def _build_url(self, endpoint: str) -> str:
        """Resolve an endpoint to a full URL on the configured host.

        Raises:
            SecurityError: If an absolute URL points at another host
        """
        if endpoint.startswith(('http://', 'https://')):
            parsed = urlparse(endpoint)
            expected = urlparse(self.root_url)
            if parsed.hostname != expected.hostname or parsed.scheme != expected.scheme:
                raise SecurityError(
                    f"Untrusted endpoint URL: {endpoint} "
                    f"(scheme={parsed.scheme}, host={parsed.hostname})"
                )
            return endpoint
        return f"{self.root_url}{self.API_PREFIX}/{endpoint.lstrip('/')}"

    @retry_on_failure(max_retries=3)
    def _api_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Make authenticated API request.

        Args:
            method: HTTP method
            endpoint: Relative API endpoint or absolute Canvas URL
            **kwargs: Additional request arguments

        Returns:
            Response object

        Raises:
            AuthInvalidError: If the access token is rejected
            NotFoundError: If the resource does not exist
            TransportError: For any other failure
        """
        url = self._build_url(endpoint)
        headers = kwargs.pop('headers', {})
        headers['Authorization'] = f"Bearer {self.access_token}"
        kwargs.setdefault('timeout', self.timeout)

        try:
            response = self._session.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {self._sanitize_for_log(str(e))}")

        if response.status_code >= 400:
            self._raise_for_status(response, method, url)
        return response

    def _raise_for_status(self, response: requests.Response, method: str, url: str) -> None:
        status = response.status_code
        body = self._sanitize_for_log(response.text[:500])
        message = f"{method} {url} returned {status}: {body}"

        if status == 401:
            # Canvas also answers 401 for items the user may not see
            if 'invalid access token' in body.lower() or 'WWW-Authenticate' in response.headers:
                raise AuthInvalidError("Invalid access token", status)
            raise TransportError(message, status, retryable=False)
        if status == 404:
            raise NotFoundError(message, status)
        retryable = status == 429 or status >= 500
        raise TransportError(message, status, retryable=retryable)

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {response.url}: {e}", response.status_code, retryable=False)

    def fetch_page(self, endpoint: str, page_size: Optional[int] = None,
                   params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch one page of records from a collection endpoint.

        Only the first page is returned; callers decide what a full page means.

        Args:
            endpoint: Collection endpoint
            page_size: Records per page (defaults to the client's page size)
            params: Extra query parameters

        Returns:
            List of raw records
        """
        query = dict(params or {})
        query['per_page'] = page_size or self.page_size
        response = self._api_request('GET', endpoint, params=query)
        data = self._json(response)
        if not isinstance(data, list):
            raise MalformedRecordError(f"Expected a list from {endpoint}, got {type(data).__name__}")
        logger.debug(f"Fetched {len(data)} records from {endpoint}")
        return data

    def fetch_one(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch a single record."""
        response = self._api_request('GET', endpoint, params=params)
        data = self._json(response)
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Expected an object from {endpoint}, got {type(data).__name__}")
        return data

    def list_active_courses(self) -> List[Dict[str, Any]]:
        return self.fetch_page('users/self/courses', params={'enrollment_state': 'active'})

    def list_course_tabs(self, course_id: Union[int, str]) -> List[Dict[str, Any]]:
        return self.fetch_page(f'courses/{course_id}/tabs')

    def get_course_root_folder(self, course_id: Union[int, str]) -> Dict[str, Any]:
        return self.fetch_one(f'courses/{course_id}/folders/root')

    def list_modules(self, course_id: Union[int, str]) -> List[Dict[str, Any]]:
        return self.fetch_page(f'courses/{course_id}/modules')

    def list_folders_by_updated_at(self, course_id: Union[int, str]) -> List[Dict[str, Any]]:
        """List a course's folders, most recently updated first."""
        return self.fetch_page(
            f'courses/{course_id}/folders',
            params={'sort': 'updated_at', 'order': 'desc'},
        )

    def list_files_by_updated_at(self, files_url: str) -> List[Dict[str, Any]]:
        """List files behind a files endpoint, most recently updated first."""
        return self.fetch_page(files_url, params={'sort': 'updated_at', 'order': 'desc'})

    def get_latest_file(self, course_id: Union[int, str]) -> List[Dict[str, Any]]:
        """Get the most recently updated file of a course (at most one record)."""
        return self.fetch_page(
            f'courses/{course_id}/files',
            page_size=1,
            params={'sort': 'updated_at', 'order': 'desc'},
        )

    def download_file(self, url: str, local_path: Path) -> int:
        """Download file content to a local path.

        Content goes to a temporary file first and is moved into place only
        once the transfer succeeded.

        Args:
            url: Canvas download URL of the file
            local_path: Local destination path

        Returns:
            Number of bytes written
        """
        response = self._api_request('GET', url, stream=True)

        local_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = local_path.with_suffix(local_path.suffix + '.tmp')
        written = 0
        temp_path.unlink(missing_ok=True)
        try:
            # O_EXCL avoids following a planted symlink
            fd = os.open(temp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            with os.fdopen(fd, 'wb') as f:
                for chunk in response.iter_content(chunk_size=8192):
                    f.write(chunk)
                    written += len(chunk)
            temp_path.replace(local_path)
        except requests.exceptions.RequestException as e:
            temp_path.unlink(missing_ok=True)
            raise TransportError(f"Download of {local_path.name} failed: {e}")
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

        logger.info(f"Downloaded: {local_path}")
        return written
