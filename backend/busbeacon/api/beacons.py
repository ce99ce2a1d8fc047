"""Beacon session REST API endpoints."""

import time

from fastapi import APIRouter, HTTPException

from busbeacon.errors import InvalidCoordinate, StoreUnavailable
from busbeacon.schemas.beacon import BeaconReport, BeaconStart, LocationUpdate, Position, PositionFix

router = APIRouter(prefix="/api/beacons", tags=["beacons"])

# Will be set by main.py
beacons = None


def _fix(lat: float, lon: float, accuracy_meters: float, captured_at_ms: int | None) -> PositionFix:
    return PositionFix(
        position=Position(lat=lat, lon=lon),
        accuracy_meters=accuracy_meters,
        captured_at_ms=captured_at_ms if captured_at_ms is not None else int(time.time() * 1000),
    )


def _service():
    if beacons is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return beacons


@router.get("", response_model=list[BeaconReport])
async def list_active_beacons(vehicle_id: str):
    """Active beacons currently reporting for a vehicle."""
    try:
        return await _service().active_beacons(vehicle_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{beacon_id}", response_model=BeaconReport, status_code=201)
async def start_beacon(beacon_id: str, body: BeaconStart):
    """Start sharing a rider's position on behalf of a vehicle."""
    fix = _fix(body.lat, body.lon, body.accuracy_meters, body.captured_at_ms)
    try:
        return await _service().start_beacon(beacon_id, body.vehicle_id, fix)
    except InvalidCoordinate as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.put("/{beacon_id}/location", response_model=BeaconReport)
async def update_location(beacon_id: str, body: LocationUpdate):
    fix = _fix(body.lat, body.lon, body.accuracy_meters, body.captured_at_ms)
    try:
        report = await _service().update_location(beacon_id, fix)
    except InvalidCoordinate as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    if report is None:
        raise HTTPException(status_code=404, detail="No active beacon session")
    return report


@router.delete("/{beacon_id}")
async def stop_beacon(beacon_id: str):
    try:
        found = await _service().stop_beacon(beacon_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not found:
        raise HTTPException(status_code=404, detail="Beacon not found")
    return {"beacon_id": beacon_id, "active": False}
