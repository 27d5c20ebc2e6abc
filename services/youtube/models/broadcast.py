from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class BroadcastRequest:
    """
    Everything needed to create one scheduled broadcast.
    """

    title: str
    scheduled_start: datetime
    description: str = ""
    privacy: str = "unlisted"
    tags: List[str] = field(default_factory=list)
    category: str = "20"
    stream_target: Optional[str] = None  # existing liveStream id to bind
    auto_start: bool = True
    auto_stop: bool = True


@dataclass
class CreatedBroadcast:
    """
    Result of a successful create: the broadcast plus the ingest point
    the relay must push to.
    """

    broadcast_id: str
    stream_target: str
    ingest_key: Optional[str] = None
    ingest_url: Optional[str] = None
    title: Optional[str] = None
    scheduled_start: Optional[str] = None
    privacy: Optional[str] = None
    category: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def as_record(self) -> Dict[str, Any]:
        return {
            "broadcast_id": self.broadcast_id,
            "stream_target": self.stream_target,
            "ingest_key": self.ingest_key,
            "ingest_url": self.ingest_url,
            "title": self.title,
            "scheduled_start": self.scheduled_start,
            "privacy": self.privacy,
            "category": self.category,
        }
