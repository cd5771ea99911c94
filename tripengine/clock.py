from datetime import datetime, date, timedelta
from typing import Optional

class Clock:
    """Source of the current time for services and background jobs"""
    
    def now(self) -> datetime:
        return datetime.now()
    
    def today(self) -> date:
        return self.now().date()

class FixedClock(Clock):
    """Clock pinned to a given instant; advance() moves it forward"""
    
    def __init__(self, current: Optional[datetime] = None):
        self.current = current or datetime.now()
    
    def now(self) -> datetime:
        return self.current
    
    def set(self, current: datetime):
        self.current = current
    
    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)

system_clock = Clock()
