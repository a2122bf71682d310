"""Flex Web Service client: request a report, poll until ready, download CSV."""

import time
import urllib.error
import urllib.parse
import urllib.request
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from ibkr_ledger.errors import FlexQueryError
from ibkr_ledger.logging_setup import get_logger

logger = get_logger(__name__)

FLEX_ERROR_CODES: Mapping[int, str] = MappingProxyType(
    {
        1001: "Statement generation unavailable; retry shortly",
        1003: "Statement generation in progress; wait and try again",
        1004: "Statement ready for download",
        1005: "Statement failed to generate; try again",
        1006: "Statement is too large; try with a smaller date range",
        1007: "Statement request invalid",
        1010: "Server error; retry later",
        1011: "Statement ID not found",
        1012: "Token has expired",
        1013: "IP address restriction violated",
        1014: "Query is invalid",
        1015: "Token is invalid",
        1016: "Token missing permissions",
        1017: "Statement date range invalid",
        1018: "Rate limit exceeded",
        1019: "Statement pending generation",
    }
)
RETRYABLE_ERROR_CODES = frozenset({1003, 1018, 1019})
CONNECTION_GUIDANCE: Mapping[int, str] = MappingProxyType(
    {
        1015: "Invalid token. Please check your Flex token.",
        1012: "Token has expired. Please generate a new token in IBKR Client Portal.",
        1014: "Invalid Query ID. Please check your Flex Query ID.",
        1013: "IP address not allowed. Please update IP restrictions in IBKR Client Portal.",
    }
)


@dataclass(frozen=True, slots=True)
class FlexResponse:
    """Fields of a Flex Web Service XML status envelope."""

    status: str
    reference_code: str | None = None
    url: str | None = None
    error_code: int | None = None
    error_message: str | None = None

    @classmethod
    def from_xml(cls, xml: str) -> "FlexResponse":
        """Parse status envelope returned by SendRequest or a failed GetStatement."""
        try:
            root = ET.fromstring(xml)
        except ET.ParseError as error:
            raise FlexQueryError(f"Unreadable IBKR response: {error}") from error
        error_code = (root.findtext("ErrorCode") or "").strip()
        return cls(
            status=(root.findtext("Status") or "").strip(),
            reference_code=root.findtext("ReferenceCode") or None,
            url=root.findtext("Url") or None,
            error_code=int(error_code) if error_code.isdigit() else None,
            error_message=root.findtext("ErrorMessage") or None,
        )


class FlexQueryClient:
    """Synchronous Flex Query fetcher with bounded exponential backoff."""

    SEND_REQUEST_URL = (
        "https://ndcdyn.interactivebrokers.com/AccountManagement/FlexWebService/SendRequest"
    )
    DEFAULT_GET_STATEMENT_URL = (
        "https://ndcdyn.interactivebrokers.com/AccountManagement/FlexWebService/GetStatement"
    )
    USER_AGENT = "ibkr-ledger-import/1.0"

    def __init__(
        self,
        token: str,
        *,
        max_retries: int = 10,
        initial_delay: float = 2.0,
        max_delay: float = 30.0,
        backoff_factor: float = 1.5,
        absolute_timeout: float = 300.0,
        request_timeout: float = 30.0,
        error_codes: Mapping[int, str] = FLEX_ERROR_CODES,
    ) -> None:
        """Store token and polling limits."""
        self.token = str(token).strip()
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.absolute_timeout = absolute_timeout
        self.request_timeout = request_timeout
        self.error_codes = error_codes

    def fetch(self, query_id: str) -> str:
        """Return CSV statement for a Flex query, raising FlexQueryError on terminal failure."""
        started = time.monotonic()
        request = self.send_request(query_id)
        if request.reference_code is None:
            raise FlexQueryError("Failed to get reference code")
        logger.info("Request accepted. Reference: %s", request.reference_code)
        get_url = self._url(
            request.url or self.DEFAULT_GET_STATEMENT_URL, request.reference_code
        )
        delay = self.initial_delay
        for attempt in range(1, self.max_retries + 1):
            elapsed = time.monotonic() - started
            if elapsed >= self.absolute_timeout:
                raise FlexQueryError(
                    f"Absolute timeout exceeded ({round(self.absolute_timeout)}s). "
                    "IBKR may be experiencing delays."
                )
            logger.debug(
                "Waiting for statement (attempt %d/%d, %ds remaining)",
                attempt,
                self.max_retries,
                round(self.absolute_timeout - elapsed),
            )
            time.sleep(delay)
            body = self._fetch_url(get_url)
            if "<Status>" not in body or "<FlexQueryResponse" in body:
                logger.info("Statement retrieved successfully")
                return body
            response = FlexResponse.from_xml(body)
            match (response.status, response.error_code):
                case (_, code) if code in RETRYABLE_ERROR_CODES:
                    delay = min(delay * self.backoff_factor, self.max_delay)
                    continue
                case ("Success", None):
                    return body
                case _:
                    raise FlexQueryError(self._error_message(response), response.error_code)
        raise FlexQueryError("Max retries exceeded waiting for statement generation")

    def send_request(self, query_id: str) -> FlexResponse:
        """Ask the service to generate a statement and return its reference."""
        response = FlexResponse.from_xml(
            self._fetch_url(self._url(self.SEND_REQUEST_URL, str(query_id).strip()))
        )
        match (response.status, response.reference_code):
            case ("Success", str()):
                return response
            case _:
                raise FlexQueryError(self._error_message(response), response.error_code)

    def test_connection(self, query_id: str) -> tuple[bool, str]:
        """Check credentials with a single SendRequest call."""
        try:
            self.send_request(query_id)
        except FlexQueryError as error:
            guidance = CONNECTION_GUIDANCE.get(error.error_code or 0)
            return False, guidance or str(error) or "Connection failed"
        return True, "Connection successful. Credentials are valid."

    def _error_message(self, response: FlexResponse) -> str:
        """Return the most specific message available for a failed envelope."""
        if response.error_message:
            return response.error_message
        if response.error_code is not None and response.error_code in self.error_codes:
            return self.error_codes[response.error_code]
        return "Unknown error from IBKR"

    def _url(self, base: str, query: str) -> str:
        """Build authenticated request URL."""
        params = {"t": self.token, "q": query, "v": "3"}
        return f"{base}?{urllib.parse.urlencode(params)}"

    def _fetch_url(self, url: str) -> str:
        """Return decoded body of a GET request."""
        req = urllib.request.Request(url, headers={"User-Agent": self.USER_AGENT})
        try:
            with urllib.request.urlopen(req, timeout=self.request_timeout) as resp:
                return resp.read().decode("utf-8")
        except urllib.error.HTTPError as error:
            raise FlexQueryError(f"HTTP error: {error.code} {error.reason}") from error
        except (urllib.error.URLError, OSError) as error:
            raise FlexQueryError(f"Network error: {error}") from error
