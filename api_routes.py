"""
API Routes for the Crop Outbreak Alerting System

This module defines all the API endpoints for the system, including:
- Report submission and resolution
- Cluster, combo counter, prone alert and tracker queries
- Recovery votes
- WebSocket endpoint for live alert views
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from alert_system.alert_manager import ClusterStatus, TrackerStatus
from integration import OutbreakAlertSystem
from outbreak_engine.models import (
    ProneAlert,
    Report,
    ReportNotFoundError,
    ReportOwnershipError,
    ReportValidationError,
    ViewerLocation,
)
from outbreak_engine.proximity_aggregator import NearbyCluster

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create API routers
api_router = APIRouter(prefix="/api", tags=["api"])
ws_router = APIRouter(tags=["websocket"])


def get_system(request: Request) -> OutbreakAlertSystem:
    """Get the running system instance from the application state"""
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return system


def _dropped() -> JSONResponse:
    return JSONResponse(status_code=202,
                        content={"status": "dropped", "timestamp": datetime.now().isoformat()})


# Report routes
@api_router.post("/reports", status_code=201, response_model=Report)
async def submit_report(payload: Dict[str, Any],
                        x_device_id: Optional[str] = Header(None),
                        system: OutbreakAlertSystem = Depends(get_system)):
    """Submit a completed diagnosis as a sighting report"""
    try:
        report = await system.ingest_diagnosis(payload, owner_id=x_device_id)
    except ReportValidationError as e:
        raise HTTPException(status_code=422,
                            detail={"message": str(e), "errors": e.errors})

    if report is None:
        return _dropped()
    return report


@api_router.get("/reports", response_model=List[Report])
async def get_reports(include_resolved: bool = True, system: OutbreakAlertSystem = Depends(get_system)):
    """List reports, oldest first"""
    return await system.list_reports(include_resolved=include_resolved)


@api_router.post("/reports/{report_id}/resolve", response_model=Report)
async def resolve_report(report_id: str,
                         x_device_id: Optional[str] = Header(None),
                         system: OutbreakAlertSystem = Depends(get_system)):
    """Resolve a report; only its submitter may do this"""
    try:
        report = await system.resolve_report(report_id, x_device_id)
    except ReportNotFoundError:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    except ReportOwnershipError as e:
        raise HTTPException(status_code=403, detail=str(e))

    if report is None:
        return _dropped()
    logger.info(f"Report {report_id} resolved by {x_device_id}")
    return report


# Cluster routes
@api_router.get("/clusters", response_model=List[ClusterStatus])
async def get_clusters(system: OutbreakAlertSystem = Depends(get_system)):
    """All outbreak clusters with their alert state"""
    clusters = await system.aggregator.refresh()
    return system.alert_manager.evaluate_clusters(clusters, await system.ok_votes())


@api_router.get("/clusters/nearby", response_model=List[NearbyCluster])
async def get_nearby_clusters(lat: Optional[float] = Query(None, ge=-90.0, le=90.0),
                              lon: Optional[float] = Query(None, ge=-180.0, le=180.0),
                              radius_km: Optional[float] = Query(None, gt=0),
                              system: OutbreakAlertSystem = Depends(get_system)):
    """Clusters around a viewer, closest first; empty without a location"""
    viewer = ViewerLocation(lat=lat, lon=lon) if lat is not None and lon is not None else None
    return await system.query_nearby_clusters(viewer, radius_km)


@api_router.get("/tracker", response_model=List[TrackerStatus])
async def get_tracker(system: OutbreakAlertSystem = Depends(get_system)):
    """Active reports grouped by disease across every region"""
    tracker = await system.global_tracker()
    return system.alert_manager.evaluate_tracker(tracker, await system.ok_votes())


# Regional routes
@api_router.get("/combo-counters")
async def get_combo_counters(system: OutbreakAlertSystem = Depends(get_system)) -> Dict[str, int]:
    return await system.combo_counters()


@api_router.get("/prone-alerts", response_model=List[ProneAlert])
async def get_prone_alerts(system: OutbreakAlertSystem = Depends(get_system)):
    return await system.prone_alerts()


# Recovery vote routes
@api_router.get("/ok-votes")
async def get_ok_votes(system: OutbreakAlertSystem = Depends(get_system)) -> Dict[str, int]:
    return await system.ok_votes()


@api_router.post("/ok-votes/{disease_key}")
async def vote_ok(disease_key: str,
                  x_device_id: Optional[str] = Header(None),
                  system: OutbreakAlertSystem = Depends(get_system)):
    """Record a "crop is recovering" vote from the calling device"""
    try:
        counted = await system.vote_ok(disease_key, x_device_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": "counted" if counted else "not_counted",
        "disease_key": disease_key,
        "ok_votes": await system.recovery_tracker.ok_votes(disease_key),
    }


# WebSocket routes
@ws_router.websocket("/ws/alerts")
async def websocket_alerts(websocket: WebSocket,
                           device_id: Optional[str] = None,
                           lat: Optional[float] = None,
                           lon: Optional[float] = None):
    """WebSocket endpoint for live alert views

    Clients may send ``{"type": "location", "lat": ..., "lon": ...}`` at any
    time to move their viewer location.
    """
    system: OutbreakAlertSystem = websocket.app.state.system
    location = None
    if lat is not None and lon is not None:
        try:
            location = ViewerLocation(lat=lat, lon=lon)
        except ValidationError:
            logger.warning(f"Ignoring invalid viewer location {lat}, {lon}")

    connection = await system.broadcaster.connect(websocket, device_id=device_id, location=location)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid message"})
                continue
            if not isinstance(message, dict) or message.get("type") != "location":
                continue
            try:
                viewer = ViewerLocation(lat=message.get("lat"), lon=message.get("lon"))
            except ValidationError:
                await websocket.send_json({"type": "error", "message": "Invalid location"})
                continue
            await system.broadcaster.update_location(connection, viewer.lat, viewer.lon)

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        system.broadcaster.disconnect(connection)
