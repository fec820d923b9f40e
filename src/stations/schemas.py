from pydantic import BaseModel, Field, validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from src.config import settings

class ConnectorType(str, Enum):
    TYPE1 = "Type1"
    TYPE2 = "Type2"
    CHADEMO = "CHAdeMO"
    CCS = "CCS"
    TESLA = "Tesla"

class StationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"

class StationBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    location: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = None
    connector_type: ConnectorType
    power_rating_kw: Decimal = Field(..., gt=0)
    price_per_kwh: Decimal = Field(..., ge=0)
    status: StationStatus = StationStatus.ACTIVE
    max_booking_duration_minutes: int = Field(settings.DEFAULT_MAX_BOOKING_DURATION_MINUTES, ge=15, le=1440)
    operator_id: Optional[str] = None
    description: Optional[str] = None

class StationCreate(StationBase):
    total_slots: int = Field(..., ge=1, le=100)

class StationUpdate(BaseModel):
    """Fields an operator may change.

    ``available_slots`` is deliberately absent: it only moves through booking
    transitions.
    """
    name: Optional[str] = None
    location: Optional[str] = None
    address: Optional[str] = None
    connector_type: Optional[ConnectorType] = None
    power_rating_kw: Optional[Decimal] = Field(None, gt=0)
    price_per_kwh: Optional[Decimal] = Field(None, ge=0)
    status: Optional[StationStatus] = None
    max_booking_duration_minutes: Optional[int] = Field(None, ge=15, le=1440)
    total_slots: Optional[int] = Field(None, ge=1, le=100)
    operator_id: Optional[str] = None
    description: Optional[str] = None

    @validator('name', 'location')
    def validate_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Must not be blank')
        return v

class Station(StationBase):
    id: int
    total_slots: int
    available_slots: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class StationSearch(BaseModel):
    query: Optional[str] = None
    connector_type: Optional[ConnectorType] = None
    status: Optional[StationStatus] = None
    min_power_kw: Optional[Decimal] = None
    only_with_free_slots: bool = False

class StationSearchResult(BaseModel):
    stations: List[Station]
    total: int
    page: int
    per_page: int
