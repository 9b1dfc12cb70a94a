"""Event processor for validating and normalizing remote API payloads."""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from processor.models import EventRecord, Listing, Venue

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processor for validating and normalizing event data."""

    ADDRESS_KEY_MAP = {
        'PostalCode': 'postal_code',
        'Country': 'region'
    }

    def extract_listing(self, results: Optional[Dict[str, Any]]) -> Optional[Listing]:
        """
        Pull the event count and event list out of a listing result.

        Args:
            results: Decoded SelectEventsLive/SelectEventsDropped payload

        Returns:
            Listing, or None if the payload is empty or malformed
        """
        if not results or not isinstance(results, dict):
            return None

        details = results.get('ResultDetails')
        if not details or not isinstance(details, dict):
            return None

        export = details.get('BeDynamicExport') or {}
        events = (export.get('Events') or []) if isinstance(export, dict) else None
        if not isinstance(events, list):
            logger.warning("Listing payload has no usable event list")
            return None

        try:
            declared = int(details.get('EventCount', len(events)))
        except (TypeError, ValueError):
            logger.warning(f"Invalid EventCount in listing: {details.get('EventCount')}")
            return None

        if declared != len(events):
            logger.warning(
                f"Listing declares {declared} events but contains {len(events)}; "
                f"using {len(events)}"
            )

        return Listing(total=len(events), events=events)

    def parse_event_detail(
        self,
        results: Optional[Dict[str, Any]]
    ) -> Optional[Tuple[EventRecord, Venue]]:
        """
        Validate and normalize a SelectEventsByID payload.

        Only the first event and first venue are used.

        Args:
            results: Decoded SelectEventsByID payload

        Returns:
            Tuple of (EventRecord, Venue), or None if validation fails
        """
        details = (results or {}).get('ResultDetails') if isinstance(results, dict) else None
        if not details:
            logger.warning("Invalid data returned by SelectEventsByID")
            return None

        export = details.get('BeDynamicExport') or {}
        events = export.get('Events') or []
        venues = export.get('Venues') or []
        event = events[0] if events else None
        venue = venues[0] if venues else None

        if not venue:
            logger.warning("No venue returned for event detail")
            return None

        if not event or not event.get('ID') or not event.get('Name'):
            logger.warning("Empty or incomplete data returned for event detail")
            return None

        return self._build_event(event), self._build_venue(venue)

    def _build_event(self, event: Dict[str, Any]) -> EventRecord:
        categories = [
            code['Name'] for code in (event.get('WebCodes') or [])
            if isinstance(code, dict) and code.get('Name')
        ]

        return EventRecord(
            event_id=str(event['ID']),
            name=event['Name'],
            slug=self.slugify(event['Name']),
            description=event.get('Description') or '',
            start_date=self._normalize_date(event.get('StartDate')),
            end_date=self._normalize_date(event.get('EndDate')),
            phone=event.get('Phone'),
            url=event.get('EventURL'),
            venue_id=str(event['VenueID']) if event.get('VenueID') else None,
            static=event.get('Static'),
            featured=event.get('Featured'),
            categories=categories
        )

    def _build_venue(self, venue: Dict[str, Any]) -> Venue:
        address = {}
        for key, value in (venue.get('Address') or {}).items():
            address[self.ADDRESS_KEY_MAP.get(key, key)] = value

        return Venue(
            venue_id=str(venue.get('ID') or ''),
            name=venue.get('Name') or '',
            description=venue.get('Description') or '',
            neighborhood=venue.get('Neighborhood') or '',
            address=address,
            classification=venue.get('PrimaryClassification')
        )

    def _normalize_date(self, date_str: Optional[str]) -> Optional[str]:
        """
        Normalize an API timestamp to ISO 8601 date format (YYYY-MM-DD).

        Args:
            date_str: Date string such as '2024-01-15T19:00:00'

        Returns:
            ISO 8601 formatted date string or None if parsing fails
        """
        if not date_str:
            return None

        date_part = str(date_str).split('T')[0].strip()
        date_formats = [
            '%Y-%m-%d',
            '%m/%d/%Y',
            '%Y/%m/%d',
        ]

        for fmt in date_formats:
            try:
                return datetime.strptime(date_part, fmt).strftime('%Y-%m-%d')
            except ValueError:
                continue

        logger.warning(f"Invalid date format in event detail: {date_str}")
        return None

    @staticmethod
    def slugify(name: str) -> str:
        """Lowercase, hyphen-separated form of a title."""
        slug = re.sub(r'[^a-z0-9]+', '-', name.lower())
        return slug.strip('-')
