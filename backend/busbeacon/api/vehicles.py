"""Vehicle state and ETA REST API endpoints."""

import logging
import time

from fastapi import APIRouter, HTTPException

from busbeacon.core.geomath import validate_coordinate
from busbeacon.errors import InvalidCoordinate, StoreUnavailable
from busbeacon.schemas.route import NearestStop, RouteStops
from busbeacon.schemas.vehicle import EtaBoard, VehicleState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])

# Will be set by main.py
tracker = None
stop_catalog = None


def _tracker():
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return tracker


def _state(vehicle_id: str) -> VehicleState:
    state = _tracker().current_states.get(vehicle_id)
    if state is None:
        raise HTTPException(status_code=404, detail="No state for vehicle")
    return state


@router.get("", response_model=list[VehicleState])
async def list_vehicles():
    """Latest fused state of every vehicle; callers judge staleness from observed_at_ms."""
    if tracker is None:
        return []
    return list(tracker.current_states.values())


@router.get("/{vehicle_id}", response_model=VehicleState)
async def get_vehicle(vehicle_id: str):
    return _state(vehicle_id)


@router.get("/{vehicle_id}/etas", response_model=EtaBoard)
async def get_etas(vehicle_id: str):
    """ETAs to every stop of the vehicle's route, soonest first."""
    t = _tracker()
    board = t.eta_boards.get(vehicle_id)
    if board is not None:
        return board
    state = _state(vehicle_id)
    return t.eta_calculator.board(state, t.stops_for(vehicle_id), int(time.time() * 1000))


@router.get("/{vehicle_id}/nearest-stop", response_model=NearestStop | None)
async def get_nearest_stop(vehicle_id: str):
    t = _tracker()
    return t.eta_calculator.nearest_stop(_state(vehicle_id).position, t.stops_for(vehicle_id))


@router.get("/{vehicle_id}/progress")
async def get_progress(vehicle_id: str):
    t = _tracker()
    progress = t.eta_calculator.route_progress(_state(vehicle_id).position, t.stops_for(vehicle_id))
    return {"vehicle_id": vehicle_id, "progress": progress}


@router.put("/{vehicle_id}/stops", response_model=RouteStops)
async def set_stops(vehicle_id: str, body: RouteStops):
    """Register (or replace) the ordered stop list and start tracking the vehicle."""
    orders = [s.order for s in body.stops]
    if len(set(orders)) != len(orders):
        raise HTTPException(status_code=422, detail="Stop order must be unique within a route")
    try:
        for s in body.stops:
            validate_coordinate(s.position.lat, s.position.lon)
    except InvalidCoordinate as e:
        raise HTTPException(status_code=422, detail=str(e))

    if stop_catalog is not None:
        try:
            await stop_catalog.replace(vehicle_id, body.stops)
        except StoreUnavailable:
            logger.exception("Failed to persist stops for vehicle %s", vehicle_id)
    _tracker().track(vehicle_id, body.stops)
    return RouteStops(stops=_tracker().stops_for(vehicle_id))


@router.delete("/{vehicle_id}/stops")
async def clear_stops(vehicle_id: str):
    """Stop the periodic fusion cycle for a vehicle; its last state is kept."""
    _tracker().untrack(vehicle_id)
    return {"vehicle_id": vehicle_id, "tracked": False}
