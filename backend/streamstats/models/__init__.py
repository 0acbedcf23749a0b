"""Database models."""
from streamstats.models.models import (
    EVENT_TYPES,
    EngagementEvent,
    Video,
    VideoCountryDailyAggregate,
    VideoDailyAggregate,
    VideoHourlyAggregate,
)

__all__ = [
    "EVENT_TYPES",
    "EngagementEvent",
    "Video",
    "VideoCountryDailyAggregate",
    "VideoDailyAggregate",
    "VideoHourlyAggregate",
]
