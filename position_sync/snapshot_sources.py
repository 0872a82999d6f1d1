"""
HTTP snapshot sources for account balances and position analytics.

Both sources poll the account backend with requests and map the response
onto view_models records. Transport and status failures are translated into
the source_errors taxonomy so the engine can decide whether a failure is
terminal, transient or reportable.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any

import requests
from dacite import DaciteError

try:
    from .source_errors import AuthError, NetworkError, FetchTimeoutError, OtherError
    from .sync_config import ApiConfig
    from .view_models import (
        ANALYTICS_UNAVAILABLE, BalanceRecord, PositionAnalytics, parse_balances, parse_analytics_list,
    )
except ImportError:
    from source_errors import AuthError, NetworkError, FetchTimeoutError, OtherError
    from sync_config import ApiConfig
    from view_models import (
        ANALYTICS_UNAVAILABLE, BalanceRecord, PositionAnalytics, parse_balances, parse_analytics_list,
    )

logger = logging.getLogger(__name__)


AUTH_STATUS_CODES = (401, 403)


class ApiSnapshotSource(ABC):
    """
    Base class for a polled JSON endpoint on the account backend.

    Subclasses set PATH_ATTR (the ApiConfig attribute holding the path) and
    RESPONSE_KEY (the top-level key holding the item list), and implement
    parse_items().
    """

    PATH_ATTR = ""
    RESPONSE_KEY = ""

    def __init__(self, api: ApiConfig) -> None:
        self.api = api

    def is_authenticated(self) -> bool:
        return bool(self.api.token)

    def build_url(self) -> str:
        path = getattr(self.api, self.PATH_ATTR)
        return f"{self.api.base_url.rstrip('/')}/{path.lstrip('/')}"

    def build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api.token:
            headers["Authorization"] = f"Bearer {self.api.token}"
        return headers

    def make_request(self, url: str) -> requests.Response:
        """
        GET the endpoint, translating transport failures.

        :raises FetchTimeoutError: If the request exceeds the configured timeout
        :raises NetworkError: If the backend cannot be reached
        """
        try:
            return requests.get(url, headers=self.build_headers(), timeout=self.api.timeout_seconds)
        except requests.exceptions.Timeout as e:
            raise FetchTimeoutError(f"Request to {url} timed out after {self.api.timeout_seconds}s") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Could not reach {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise OtherError(f"Request to {url} failed: {e}") from e

    def build_response(self, response: requests.Response) -> List[Dict[str, Any]]:
        """
        Validate status and pull the item list out of the JSON body.

        :raises AuthError: On 401/403
        :raises OtherError: On any other non-2xx status or a malformed body
        """
        if response.status_code in AUTH_STATUS_CODES:
            raise AuthError(f"{response.status_code} Unauthorized")
        if not 200 <= response.status_code < 300:
            raise OtherError(f"Unexpected status {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise OtherError("Response body is not valid JSON") from e

        items = body.get(self.RESPONSE_KEY) if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise OtherError(f"Response has no '{self.RESPONSE_KEY}' list")
        return items

    @abstractmethod
    def parse_items(self, items: List[Dict[str, Any]]) -> list:
        """Map the raw item list onto records."""

    def fetch(self) -> list:
        """
        Fetch and parse one snapshot.

        :raises SourceError: AuthError, NetworkError, FetchTimeoutError or OtherError
        """
        url = self.build_url()
        logger.debug(f"Fetching {url}")
        items = self.build_response(self.make_request(url))
        try:
            return self.parse_items(items)
        except (DaciteError, ValueError, TypeError, AttributeError) as e:
            raise OtherError(f"Malformed item in '{self.RESPONSE_KEY}': {e}") from e


class BalanceSnapshotSource(ApiSnapshotSource):
    """Authoritative holdings: GET {base_url}{balances_path} -> {"balances": [...]}"""

    PATH_ATTR = "balances_path"
    RESPONSE_KEY = "balances"

    def parse_items(self, items: List[Dict[str, Any]]) -> List[BalanceRecord]:
        return parse_balances(items)


class PositionSnapshotSource(ApiSnapshotSource):
    """Best-effort analytics: GET {base_url}{positions_path} -> {"positions": [...]}"""

    PATH_ATTR = "positions_path"
    RESPONSE_KEY = "positions"

    def parse_items(self, items: List[Dict[str, Any]]) -> List[PositionAnalytics]:
        return parse_analytics_list(items)


def fetch_snapshot(
    balances: BalanceSnapshotSource,
    analytics: Optional[Any],
):
    """
    Run one snapshot cycle: balances first, then analytics chained after.

    Balance failures propagate. Analytics failures of any kind are logged and
    reported as ANALYTICS_UNAVAILABLE.

    :param balances: Balance source
    :param analytics: Analytics source with a fetch() method, or None
    :return: (balance records, analytics list or ANALYTICS_UNAVAILABLE)
    """
    balance_records = balances.fetch()

    if analytics is None:
        return balance_records, ANALYTICS_UNAVAILABLE
    try:
        return balance_records, analytics.fetch()
    except Exception as e:
        logger.warning(f"Position analytics unavailable, using balances only: {e}")
        return balance_records, ANALYTICS_UNAVAILABLE
