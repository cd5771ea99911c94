from fastapi import WebSocket, WebSocketDisconnect
from typing import Any, Dict, List, Optional, Set
import asyncio
import json
import logging
from datetime import datetime

from tripengine.notifications.channels import LiveUpdateChannel

logger = logging.getLogger(__name__)

class LiveUpdateHub(LiveUpdateChannel):
    """Manager for WebSocket connections and topic subscriptions"""
    
    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.subscriptions: Dict[str, Set[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
    
    async def connect(self, websocket: WebSocket):
        """Accept new WebSocket connection"""
        await websocket.accept()
        self.active_connections.append(websocket)
        self._loop = asyncio.get_running_loop()
    
    def disconnect(self, websocket: WebSocket):
        """Remove WebSocket connection and its subscriptions"""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        
        for topic in list(self.subscriptions):
            self._drop_subscriber(topic, websocket)

    def _drop_subscriber(self, topic: str, websocket: WebSocket):
        subscribers = self.subscriptions.get(topic)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self.subscriptions[topic]

    async def subscribe(self, websocket: WebSocket, topic: str):
        """Subscribe WebSocket to a topic such as trip-12 or notifications-4"""
        self.subscriptions.setdefault(topic, set()).add(websocket)
        await self.send_personal_message(websocket, {
            "type": "subscription_confirmed",
            "topic": topic,
            "timestamp": datetime.now().isoformat()
        })
    
    async def unsubscribe(self, websocket: WebSocket, topic: str):
        self._drop_subscriber(topic, websocket)
        await self.send_personal_message(websocket, {
            "type": "unsubscribed",
            "topic": topic,
            "timestamp": datetime.now().isoformat()
        })
    
    async def send_personal_message(self, websocket: WebSocket, message: dict):
        """Send message to specific WebSocket"""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception:
            # Connection might be closed
            self.disconnect(websocket)
    
    async def broadcast_to_topic(self, topic: str, message: dict):
        """Broadcast message to topic subscribers"""
        if topic not in self.subscriptions:
            return
        
        message_text = json.dumps(message, default=str)
        disconnected = []
        
        for connection in self.subscriptions[topic].copy():
            try:
                await connection.send_text(message_text)
            except Exception:
                disconnected.append(connection)
        
        # Clean up disconnected clients
        for connection in disconnected:
            self.disconnect(connection)
    
    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        """Thread-safe, fire-and-forget publish from request or worker threads"""
        if not self.subscriptions.get(topic):
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop for live update on %s; dropped", topic)
            return
        
        message = {
            "type": event,
            "topic": topic,
            "data": payload,
            "timestamp": datetime.now().isoformat()
        }
        try:
            asyncio.run_coroutine_threadsafe(self.broadcast_to_topic(topic, message), loop)
        except RuntimeError as e:
            logger.debug("Live update on %s dropped: %s", topic, e)
    
    async def handle_client_message(self, websocket: WebSocket, message: dict):
        """Handle messages from WebSocket clients"""
        message_type = message.get("type")
        topic = message.get("topic")
        
        if message_type == "subscribe" and topic:
            await self.subscribe(websocket, str(topic))
        
        elif message_type == "unsubscribe" and topic:
            await self.unsubscribe(websocket, str(topic))
        
        elif message_type == "ping":
            await self.send_personal_message(websocket, {
                "type": "pong",
                "timestamp": datetime.now().isoformat()
            })
        
        else:
            await self.send_personal_message(websocket, {
                "type": "error",
                "message": f"Unknown message type: {message_type}",
                "timestamp": datetime.now().isoformat()
            })

# Global hub instance
live_hub = LiveUpdateHub()

async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for live trip positions and notifications"""
    await live_hub.connect(websocket)
    
    try:
        await live_hub.send_personal_message(websocket, {
            "type": "welcome",
            "message": "Connected to live trip updates",
            "timestamp": datetime.now().isoformat(),
            "available_commands": ["subscribe", "unsubscribe", "ping"]
        })
        
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await live_hub.send_personal_message(websocket, {
                    "type": "error",
                    "message": "Invalid JSON format",
                    "timestamp": datetime.now().isoformat()
                })
                continue
            await live_hub.handle_client_message(websocket, message)
    
    except WebSocketDisconnect:
        live_hub.disconnect(websocket)
    except Exception as e:
        logger.warning("WebSocket error: %s", e)
        live_hub.disconnect(websocket)
