from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class NotificationType(str, Enum):
    """Notification type tags"""
    TRIP_SCHEDULED = "TRIP_SCHEDULED"
    TRIP_STARTED = "TRIP_STARTED"
    TRIP_COMPLETED = "TRIP_COMPLETED"
    ROUTE_DELAYED = "ROUTE_DELAYED"
    PASSENGER_BOARDED = "PASSENGER_BOARDED"
    PASSENGER_ABSENT = "PASSENGER_ABSENT"
    PASSENGER_DROPPED = "PASSENGER_DROPPED"
    EMERGENCY_ALERT = "EMERGENCY_ALERT"
    BROADCAST = "BROADCAST"

class NotificationPriority(str, Enum):
    """Delivery priority"""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class UserRole(str, Enum):
    """Roles inside an organization"""
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"
    PARENT = "PARENT"

class Audience(str, Enum):
    """Broadcast audiences"""
    ALL = "ALL"
    DRIVERS = "DRIVERS"
    PARENTS = "PARENTS"

# Requests
class BroadcastRequest(BaseModel):
    """Message to every matching user of an organization"""
    organization_id: int
    sender_id: Optional[int] = None
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    audience: Audience = Audience.ALL

class EmergencyAlertRequest(BaseModel):
    """Highest-priority alert to organization admins"""
    organization_id: int
    sender_id: Optional[int] = None
    message: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = {}

# Responses
class DeliveryFailure(BaseModel):
    """One recipient the channel could not reach"""
    user_id: int
    notification_type: Optional[str] = None
    error: str
    failed_at: Optional[datetime] = None

class FanoutReport(BaseModel):
    """Outcome of a fanout that was awaited"""
    attempted: int
    delivered: int
    failures: List[DeliveryFailure] = []

class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    notification_metadata: Optional[Dict[str, Any]] = None
    is_read: bool = False
    created_at: datetime
    read_at: Optional[datetime] = None

class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int
