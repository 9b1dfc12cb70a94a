"""Data models for event processing."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Venue:
    """Venue attached to an event detail."""
    venue_id: str
    name: str
    description: str
    neighborhood: str
    address: Dict[str, str] = field(default_factory=dict)
    classification: Optional[str] = None


@dataclass
class EventRecord:
    """Validated and normalized event detail."""
    event_id: str
    name: str
    slug: str
    description: str
    start_date: Optional[str]
    end_date: Optional[str]
    phone: Optional[str]
    url: Optional[str]
    venue_id: Optional[str]
    static: Optional[Any]
    featured: Optional[Any]
    categories: List[str] = field(default_factory=list)


@dataclass
class Listing:
    """A live or dropped event listing."""
    total: int
    events: List[Dict[str, Any]]
