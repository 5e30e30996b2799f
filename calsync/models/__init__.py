from calsync.models.availability import BusyBlock
from calsync.models.cache import CacheEntry
from calsync.models.calendar_event import CalendarEvent, SoftDeletable
from calsync.models.integration import Integration, IntegrationStatus, Provider
from calsync.models.meet_link import MeetLink
from calsync.models.rate_limit import RateLimitWindow

__all__ = [
    "Integration",
    "IntegrationStatus",
    "Provider",
    "CalendarEvent",
    "SoftDeletable",
    "RateLimitWindow",
    "CacheEntry",
    "BusyBlock",
    "MeetLink",
]
