from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class OutboxStatsResponse(BaseModel):
	pending: int
	processed: int
	failing: int
	oldest_pending_at: Optional[datetime]


class OutboxProcessorHealth(BaseModel):
	alive: bool
	last_processed: datetime
	queue_depth: int
	poll_interval: float
