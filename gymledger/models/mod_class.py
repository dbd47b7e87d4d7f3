from pydantic import BaseModel
from typing import Optional
from datetime import datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo
from gymledger.configuration.config import Config

class ClassStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"

class ClassSession(BaseModel):
    id: str
    name: str
    schedule: datetime                  # class date
    start_time: str                     # "HH:MM" local to the gym
    end_time: Optional[str] = None
    capacity: int
    enrolled: int = 0
    trainer: Optional[str] = None
    status: ClassStatus = ClassStatus.ACTIVE

    class Config:
        from_attributes = True

    def _at(self, clock_time: str) -> datetime:
        hour, minute = (int(part) for part in clock_time.split(":")[:2])
        local = datetime.combine(
            self.schedule.date(),
            time(hour, minute),
            tzinfo=ZoneInfo(Config.GYM_TIMEZONE)
        )
        return local.astimezone(timezone.utc)

    @property
    def starts_at(self) -> datetime:
        """Start of the class as an aware UTC datetime."""
        return self._at(self.start_time)

    @property
    def ends_at(self) -> datetime:
        return self._at(self.end_time) if self.end_time else self.starts_at

    @property
    def available(self) -> int:
        return max(self.capacity - self.enrolled, 0)
