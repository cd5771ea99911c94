from fastapi import APIRouter, Depends, Query
from typing import List

from tripengine.dependencies import get_dispatcher, get_fanout, get_inbox
from tripengine.exceptions import TripEngineError, to_http_exception
from tripengine.notifications.dispatcher import SendDispatcher
from tripengine.notifications.fanout import NotificationFanout
from tripengine.notifications.inbox import NotificationInbox
from tripengine.notifications.schemas import (
    BroadcastRequest, DeliveryFailure, EmergencyAlertRequest, FanoutReport, NotificationList,
    NotificationResponse
)

router = APIRouter()

@router.post("/broadcast", response_model=FanoutReport)
def broadcast(
    request: BroadcastRequest,
    fanout: NotificationFanout = Depends(get_fanout)
):
    """Send a message to everyone in an audience"""
    return fanout.broadcast(
        request.organization_id, request.title, request.message,
        audience=request.audience, sender_id=request.sender_id
    )

@router.post("/emergency", response_model=FanoutReport)
def emergency_alert(
    request: EmergencyAlertRequest,
    fanout: NotificationFanout = Depends(get_fanout)
):
    """Critical alert to every admin of the organization"""
    return fanout.emergency_alert(
        request.organization_id, request.message,
        sender_id=request.sender_id, metadata=request.metadata
    )

@router.get("/delivery-failures", response_model=List[DeliveryFailure])
def get_delivery_failures(dispatcher: SendDispatcher = Depends(get_dispatcher)):
    """Most recent sends that failed, oldest first"""
    return dispatcher.recent_failures()

@router.get("/users/{user_id}", response_model=NotificationList)
def list_notifications(
    user_id: int,
    unread_only: bool = Query(False, description="Only unread notifications"),
    limit: int = Query(50, ge=1, le=200, description="Maximum notifications to return"),
    inbox: NotificationInbox = Depends(get_inbox)
):
    """A user's notifications, newest first"""
    return NotificationList(
        notifications=[
            NotificationResponse.model_validate(n)
            for n in inbox.list_for_user(user_id, unread_only=unread_only, limit=limit)
        ],
        unread_count=inbox.unread_count(user_id)
    )

@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    inbox: NotificationInbox = Depends(get_inbox)
):
    try:
        return inbox.mark_read(notification_id)
    except TripEngineError as e:
        raise to_http_exception(e)

@router.post("/users/{user_id}/read-all")
def mark_all_read(
    user_id: int,
    inbox: NotificationInbox = Depends(get_inbox)
):
    updated = inbox.mark_all_read(user_id)
    return {"success": True, "updated": updated}
