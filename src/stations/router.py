from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from decimal import Decimal

from src.database import get_db
from src.auth.schemas import Actor
from src.auth.dependencies import require_privileged
from src.stations.schemas import (
    Station, StationCreate, StationUpdate, StationSearch, StationSearchResult,
    ConnectorType, StationStatus
)
from src.stations.service import StationService

router = APIRouter()

@router.get("/", response_model=StationSearchResult)
def get_stations(
    skip: int = Query(0, ge=0, description="Number of stations to skip"),
    limit: int = Query(50, ge=1, le=100, description="Number of stations to return"),
    query: Optional[str] = Query(None, description="Search by station name or location"),
    connector_type: Optional[ConnectorType] = Query(None, description="Filter by connector type"),
    station_status: Optional[StationStatus] = Query(None, alias="status", description="Filter by status"),
    min_power_kw: Optional[Decimal] = Query(None, ge=0, description="Minimum power rating"),
    only_with_free_slots: bool = Query(False, description="Only stations with free slots"),
    db: Session = Depends(get_db)
):
    """Get charging stations with optional search and filters"""
    search = StationSearch(
        query=query,
        connector_type=connector_type,
        status=station_status,
        min_power_kw=min_power_kw,
        only_with_free_slots=only_with_free_slots
    )

    stations, total = StationService.get_stations(db, skip=skip, limit=limit, search=search)
    page = (skip // limit) + 1

    return StationSearchResult(
        stations=[Station.from_orm(s) for s in stations],
        total=total,
        page=page,
        per_page=limit
    )

@router.get("/{station_id}", response_model=Station)
def get_station(station_id: int, db: Session = Depends(get_db)):
    """Get station details by ID"""
    station = StationService.get_station_by_id(db, station_id=station_id)
    if not station:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Station not found"
        )
    return station

@router.post("/", response_model=Station, status_code=status.HTTP_201_CREATED)
def create_station(
    station: StationCreate,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Register a new charging station"""
    return StationService.create_station(db, station)

@router.put("/{station_id}", response_model=Station)
def update_station(
    station_id: int,
    station_update: StationUpdate,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Update station details"""
    try:
        station = StationService.update_station(db, station_id, station_update)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )

    if not station:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Station not found"
        )
    return station

@router.delete("/{station_id}", response_model=Station)
def deactivate_station(
    station_id: int,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Deactivate a station; stations are never physically deleted"""
    try:
        station = StationService.deactivate_station(db, station_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )

    if not station:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Station not found"
        )
    return station
