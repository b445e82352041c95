"""
REST API clients for Compute Engine (v1) and Cloud Logging (v2).

Both APIs are called through an AuthorizedSession so that credentials come
from Application Default Credentials, the same way gcloud finds them.
"""

import logging
import time
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import google.auth
import requests
from google.auth.exceptions import TransportError
from google.auth.transport.requests import AuthorizedSession

from events import ACTIVITY_LOG, PROCESSED_SEVERITIES, SUPPORTED_METHODS, SYSTEM_EVENT_LOG
from models import ImageLocator, format_timestamp

logger = logging.getLogger(__name__)

COMPUTE_API_BASE = "https://compute.googleapis.com/compute/v1"
LOGGING_API_BASE = "https://logging.googleapis.com/v2"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
MAX_DELAY_S = 120.0


class RestClientBase:
    """Authenticated REST client with retries for transient errors."""

    API_BASE = ""
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        project_id: str,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 2.0,
    ):
        """
        Args:
            project_id: Project whose resources or logs are read
            timeout_s: Per-request timeout in seconds
            max_retries: Retries after the first attempt
            base_delay: Backoff delay of the first retry, doubled afterwards
        """
        self.project_id = project_id
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        self.session = AuthorizedSession(credentials)

    def _url(self, path: str) -> str:
        """Resolve a path against API_BASE; self links pass through unchanged."""
        if path.startswith("https://"):
            return path
        return f"{self.API_BASE}/{path.lstrip('/')}"

    @staticmethod
    def _error_message(resp) -> str:
        try:
            return resp.json().get("error", {}).get("message", "")
        except ValueError:
            return ""

    def _request_with_retry(self, method: str, url: str, **kwargs) -> dict:
        """
        Send a GET or POST request, retrying transport errors and
        retryable status codes.

        Returns:
            Dictionary with 'response' and 'status_code' keys. Non-retryable
            error responses are returned, not raised.

        Raises:
            ValueError: If the method is not GET or POST
            RuntimeError: If all attempts failed
        """
        senders = {"GET": self.session.get, "POST": self.session.post}
        send = senders.get(method.upper())
        if send is None:
            raise ValueError(f"Unsupported method: {method}")

        attempts = self.max_retries + 1
        last_error = None

        for attempt in range(attempts):
            try:
                resp = send(url, timeout=self.timeout_s, **kwargs)
            except (requests.RequestException, TransportError) as e:
                last_error = str(e)
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"{method} {url} failed: {e} "
                    f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                continue

            if resp.status_code not in self.RETRYABLE_STATUS_CODES:
                return {"response": resp, "status_code": resp.status_code}

            message = self._error_message(resp)
            last_error = f"HTTP {resp.status_code}: {message or resp.text[:200]}"
            delay = self._calculate_delay(attempt, resp)
            logger.warning(
                f"{method} {url} returned {resp.status_code} {message} "
                f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.1f}s"
            )
            time.sleep(delay)

        raise RuntimeError(f"Giving up on {method} {url} after {attempts} attempts: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """Backoff delay in seconds; a Retry-After header takes precedence."""
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After: {resp.headers['Retry-After']}")

        delay = self.base_delay * (2**attempt)
        # +/-10% jitter
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, MAX_DELAY_S)

    def _get_json(self, path: str, params: Optional[Dict] = None) -> Dict:
        result = self._request_with_retry("GET", self._url(path), params=params or {})
        resp = result["response"]
        if resp.status_code != 200:
            raise RuntimeError(f"GET {path} failed ({resp.status_code}): {resp.text}")
        return resp.json()


class ComputeRestClient(RestClientBase):
    """REST client for the Compute Engine v1 API."""

    API_BASE = COMPUTE_API_BASE

    def list_instances(self) -> List[Dict]:
        """
        List all instances of the project across all zones.

        Returns:
            List of Instance resources

        Raises:
            RuntimeError: If API call fails
        """
        path = f"projects/{self.project_id}/aggregated/instances"
        instances: List[Dict] = []
        page_token: Optional[str] = None

        while True:
            params = {"returnPartialSuccess": "true"}
            if page_token:
                params["pageToken"] = page_token

            data = self._get_json(path, params)
            for scoped in (data.get("items") or {}).values():
                instances.extend(scoped.get("instances", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return instances

    def get_disk(self, disk_url: str) -> Dict:
        """
        Get a disk by its self link.

        Raises:
            RuntimeError: If API call fails
        """
        return self._get_json(disk_url)

    def get_image(self, image: ImageLocator) -> Optional[Dict]:
        """
        Get an image, resolving family references to the latest image.

        Returns:
            Image resource, or None if the image does not exist anymore

        Raises:
            RuntimeError: If API call fails
        """
        url = self._url(f"projects/{image.project_id}/global/images/{image.name}")
        result = self._request_with_retry("GET", url)
        resp = result["response"]
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RuntimeError(f"Get image failed ({resp.status_code}): {resp.text}")
        return resp.json()


def build_audit_log_filter(start: datetime, end: datetime) -> str:
    """
    Build a Cloud Logging filter for events relevant to instance histories.

    Args:
        start: Beginning of the window (exclusive)
        end: End of the window (inclusive)
    """
    log_names = " OR ".join(f'"{name}"' for name in (ACTIVITY_LOG, SYSTEM_EVENT_LOG))
    methods = " OR ".join(f'"{m}"' for m in sorted(SUPPORTED_METHODS))
    severities = " OR ".join(f'"{s}"' for s in sorted(PROCESSED_SEVERITIES))
    return (
        f'resource.type="gce_instance" '
        f"AND logName:({log_names}) "
        f"AND protoPayload.methodName=({methods}) "
        f"AND severity=({severities}) "
        f'AND timestamp > "{format_timestamp(start)}" '
        f'AND timestamp <= "{format_timestamp(end)}"'
    )


class LoggingRestClient(RestClientBase):
    """REST client for the Cloud Logging v2 API."""

    API_BASE = LOGGING_API_BASE

    def list_log_entries(self, log_filter: str, page_size: int = 1000) -> Iterator[Dict]:
        """
        List log entries of the project, newest first.

        Args:
            log_filter: Cloud Logging filter expression
            page_size: Number of entries per page

        Yields:
            LogEntry resources

        Raises:
            RuntimeError: If API call fails
        """
        url = self._url("entries:list")
        page_token: Optional[str] = None

        while True:
            body = {
                "resourceNames": [f"projects/{self.project_id}"],
                "filter": log_filter,
                "orderBy": "timestamp desc",
                "pageSize": page_size,
            }
            if page_token:
                body["pageToken"] = page_token

            result = self._request_with_retry("POST", url, json=body)
            resp = result["response"]
            if resp.status_code != 200:
                raise RuntimeError(
                    f"List log entries failed ({resp.status_code}): {resp.text}"
                )

            data = resp.json()
            for entry in data.get("entries", []):
                yield entry

            page_token = data.get("nextPageToken")
            if not page_token:
                break
