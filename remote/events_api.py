"""Client for the remote events API (SOAP service returning JSON documents)."""
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional
from xml.sax.saxutils import escape

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


def decode_json(raw: str) -> Any:
    """Decode an API document; decimals stay Decimal so DynamoDB accepts them."""
    return json.loads(raw, parse_float=Decimal)


class EventsApiClient:
    """Thin wrapper over the events API's live, by-id and dropped queries."""

    SOAP_NAMESPACE = 'http://tempuri.org/'
    ENVELOPE = (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        '<soap:Body><{operation} xmlns="{namespace}">{params}</{operation}></soap:Body>'
        '</soap:Envelope>'
    )

    def __init__(
        self,
        api_url: str,
        token: str,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API client.

        Args:
            api_url: URL of the .asmx service endpoint
            token: Security token sent with every call
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per call before giving up (default: 3)
            base_delay: Initial backoff delay in seconds (default: 1)
            session: Optional requests session
        """
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = session or requests.Session()

    # ==== Public contract ====

    def fetch_live_since_raw(self, start_date: str) -> Optional[str]:
        """
        Fetch the raw JSON listing of live events updated since a date.

        Args:
            start_date: ISO date (YYYY-MM-DD)

        Returns:
            Raw JSON text, or None on any fault
        """
        return self._call('SelectEventsLive', [
            ('securityToken', self.token),
            ('lastUpdated', start_date[:10]),
            ('numberOfReturns', None),
            ('numberToStartAt', None),
        ])

    def fetch_live_since(self, start_date: str) -> Optional[Dict[str, Any]]:
        return self._decode(self.fetch_live_since_raw(start_date), 'SelectEventsLive')

    def fetch_by_id(self, event_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch full detail (event and venue) for a single event.

        Args:
            event_id: External event ID

        Returns:
            Decoded payload, or None on any fault
        """
        raw = self._call('SelectEventsByID', [
            ('securityToken', self.token),
            ('eventIDs', [event_id]),
        ])
        return self._decode(raw, 'SelectEventsByID')

    def fetch_dropped_since(self, start_date: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the listing of events dropped since a date.

        Args:
            start_date: ISO date (YYYY-MM-DD)

        Returns:
            Decoded payload, or None on any fault
        """
        raw = self._call('SelectEventsDropped', [
            ('securityToken', self.token),
            ('lastUpdated', start_date[:10]),
        ])
        return self._decode(raw, 'SelectEventsDropped')

    # ==== SOAP plumbing ====

    def _call(self, operation: str, params: Iterable) -> Optional[str]:
        """
        Invoke a SOAP operation and return the text of its Result element.

        Transport failures, SOAP faults and missing results are logged and
        reported as None.
        """
        body = self._build_envelope(operation, params)
        headers = {
            'Content-Type': 'text/xml; charset=utf-8',
            'SOAPAction': f'"{self.SOAP_NAMESPACE}{operation}"'
        }

        try:
            response_text = self._post_with_retry(operation, body, headers)
        except requests.RequestException as e:
            logger.error(f"{operation} failed: {e}")
            return None

        return self._extract_result(operation, response_text)

    def _post_with_retry(self, operation: str, body: str, headers: Dict[str, str]) -> str:
        """
        POST the envelope with exponential backoff.

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Calling {operation} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.post(
                    self.api_url,
                    data=body.encode('utf-8'),
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise

    def _build_envelope(self, operation: str, params: Iterable) -> str:
        parts = []
        for name, value in params:
            if value is None:
                parts.append(f'<{name} xsi:nil="true" '
                             f'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" />')
            elif isinstance(value, (list, tuple)):
                items = ''.join(f'<int>{escape(str(item))}</int>' for item in value)
                parts.append(f'<{name}>{items}</{name}>')
            else:
                parts.append(f'<{name}>{escape(str(value))}</{name}>')

        return self.ENVELOPE.format(
            operation=operation,
            namespace=self.SOAP_NAMESPACE,
            params=''.join(parts)
        )

    def _extract_result(self, operation: str, response_text: str) -> Optional[str]:
        soup = BeautifulSoup(response_text, 'html.parser')

        # html.parser lowercases tag names
        fault = soup.find('soap:fault')
        if fault:
            fault_string = fault.find('faultstring')
            message = fault_string.get_text(strip=True) if fault_string else fault.get_text(strip=True)
            logger.error(f"{operation} returned a SOAP fault: {message}")
            return None

        result = soup.find(f'{operation.lower()}result')
        if result is None:
            logger.error(f"{operation} response has no result element")
            return None

        text = result.get_text(strip=True)
        return text or None

    def _decode(self, raw: Optional[str], operation: str) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            return decode_json(raw)
        except ValueError as e:
            logger.error(f"{operation} returned malformed JSON: {e}")
            return None
