"""Alert Broadcast for connected viewers

Pushes a freshly derived AlertView to every connected viewer whenever reports,
combo counters, the prone alert feed or recovery votes change.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from alert_system.alert_manager import AlertManager, AlertSession, AlertView
from alert_system.combo_counter import ComboCounter
from alert_system.recovery_tracker import RecoveryTracker
from outbreak_engine.models import ViewerLocation
from outbreak_engine.proximity_aggregator import ProximityAggregator

logger = logging.getLogger(__name__)


class ViewerConnection:
    """A connected viewer and its alert session"""

    def __init__(self, websocket: WebSocket, session: AlertSession):
        self.websocket = websocket
        self.session = session

    @property
    def session_id(self) -> str:
        return self.session.session_id


class AlertBroadcaster:
    """Keeps every connected viewer's alert view current"""

    def __init__(self, alert_manager: AlertManager, aggregator: ProximityAggregator,
                 combo_counter: ComboCounter, recovery_tracker: RecoveryTracker):
        self.alert_manager = alert_manager
        self.aggregator = aggregator
        self.combo_counter = combo_counter
        self.recovery_tracker = recovery_tracker
        self.active: Set[ViewerConnection] = set()
        self.views_sent = 0
        self._refresh_lock = asyncio.Lock()
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self):
        """Subscribe to every source an alert view is derived from"""
        if self._unsubscribers:
            return

        async def on_change(_):
            await self.refresh()

        self._unsubscribers = [
            self.aggregator.report_store.subscribe(on_change),
            self.combo_counter.subscribe(on_change),
            self.combo_counter.subscribe_prone_alerts(on_change),
            self.recovery_tracker.subscribe(on_change),
        ]
        logger.info("Alert broadcaster attached")

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def connect(self, websocket: WebSocket, device_id: Optional[str] = None,
                      location: Optional[ViewerLocation] = None) -> ViewerConnection:
        """Accept a viewer and send its first alert view"""
        await websocket.accept()
        connection = ViewerConnection(websocket, AlertSession(device_id=device_id, viewer_location=location))
        self.active.add(connection)
        logger.info(f"Viewer {connection.session_id} connected ({len(self.active)} active)")

        async with self._refresh_lock:
            payload = self._render(connection, await self._collect_state())
        await self._deliver(connection, payload)
        return connection

    def disconnect(self, connection: ViewerConnection):
        if connection in self.active:
            self.active.discard(connection)
            logger.info(f"Viewer {connection.session_id} disconnected ({len(self.active)} active)")

    async def update_location(self, connection: ViewerConnection, lat: float, lon: float):
        """Move a viewer and re-send its view"""
        connection.session.update_location(lat, lon)
        async with self._refresh_lock:
            payload = self._render(connection, await self._collect_state())
        await self._deliver(connection, payload)

    async def refresh(self):
        """Re-derive and push the alert view of every connected viewer

        Views are built under the refresh lock and sent concurrently once it
        is released.
        """
        if not self.active:
            return

        async with self._refresh_lock:
            state = await self._collect_state()
            payloads = [(connection, self._render(connection, state)) for connection in list(self.active)]
        await asyncio.gather(*(self._deliver(connection, payload) for connection, payload in payloads))

    def build_view(self, connection: ViewerConnection, state: Dict[str, Any]) -> AlertView:
        return self.alert_manager.build_view(connection.session, **state)

    async def _collect_state(self) -> Dict[str, Any]:
        clusters = await self.aggregator.refresh()
        return {
            "clusters": clusters,
            "tracker": self.aggregator.tracker,
            "combo_counts": await self.combo_counter.snapshot(),
            "feed": await self.combo_counter.prone_alerts(),
            "ok_votes": await self.recovery_tracker.votes(),
        }

    def _render(self, connection: ViewerConnection, state: Dict[str, Any]) -> Dict[str, Any]:
        return self.build_view(connection, state).model_dump(mode="json")

    async def _deliver(self, connection: ViewerConnection, payload: Dict[str, Any]):
        try:
            await connection.websocket.send_json(payload)
            self.views_sent += 1
        except Exception as e:
            logger.warning(f"Dropping viewer {connection.session_id}: {e}")
            self.active.discard(connection)

    def get_broadcast_metrics(self) -> Dict:
        return {
            "active_viewers": len(self.active),
            "views_sent": self.views_sent,
        }
