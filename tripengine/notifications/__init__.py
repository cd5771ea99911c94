"""
Notifications Module

Fans trip, attendance and organization events out to user inboxes and to
connected live viewers.

Key Components:
- fanout.py: Per-recipient notification composition and delivery reports
- dispatcher.py: Bounded worker lanes keeping per-recipient order
- channels.py: Inbox channel backed by the database, live channel interface
- websocket.py: WebSocket hub with topic subscriptions
- inbox.py: Listing and read-state of stored notifications
- router.py: FastAPI endpoints for broadcasts, alerts and the inbox
"""

from .schemas import NotificationType, NotificationPriority, Audience, UserRole, FanoutReport
from .dispatcher import SendDispatcher, StripedDispatcher, SynchronousDispatcher

__all__ = [
    "NotificationType",
    "NotificationPriority",
    "Audience",
    "UserRole",
    "FanoutReport",
    "SendDispatcher",
    "StripedDispatcher",
    "SynchronousDispatcher"
]
