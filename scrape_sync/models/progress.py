"""Progress stream event model"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, Any
from scrape_sync.constants import EventKind, TERMINAL_EVENTS


class ProgressEvent(BaseModel):
    """One named event with a JSON payload"""

    kind: EventKind
    data: Dict[str, Any] = Field(default_factory=dict)
    run_id: str = ""
    sequence: int = 0
    emitted_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENTS

