from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Text, ForeignKey, Numeric, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from src.database import Base

# ================================
# Charging Stations
# ================================
class ChargingStation(Base):
    __tablename__ = "charging_stations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    location = Column(String(255), nullable=False)
    address = Column(String(255))
    connector_type = Column(String(20), nullable=False)
    power_rating_kw = Column(Numeric(8, 2), nullable=False)
    price_per_kwh = Column(Numeric(10, 2), nullable=False)
    total_slots = Column(Integer, nullable=False, default=1)
    available_slots = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="active", index=True)
    max_booking_duration_minutes = Column(Integer, nullable=False, default=240)
    operator_id = Column(String(64))
    description = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    bookings = relationship("Booking", back_populates="station")

    __table_args__ = (
        CheckConstraint("available_slots >= 0", name="ck_station_available_non_negative"),
        CheckConstraint("available_slots <= total_slots", name="ck_station_available_within_total"),
    )

# ================================
# Bookings
# ================================
class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True)
    booking_number = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    station_id = Column(Integer, ForeignKey("charging_stations.id"), nullable=False, index=True)
    booking_date = Column(Date, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    vehicle_number = Column(String(20), nullable=False)
    vehicle_type = Column(String(50))
    estimated_charging_minutes = Column(Integer)
    notes = Column(Text)

    qr_code = Column(Text)
    qr_code_generated_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False)
    created_by = Column(String(64))
    modified_at = Column(DateTime)
    modified_by = Column(String(64))
    approved_at = Column(DateTime)
    approved_by = Column(String(64))
    started_at = Column(DateTime)
    started_by = Column(String(64))
    completed_at = Column(DateTime)
    completed_by = Column(String(64))
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String(64))
    cancellation_reason = Column(String(500))
    rejected_at = Column(DateTime)
    rejected_by = Column(String(64))
    rejection_reason = Column(String(500))
    no_show_at = Column(DateTime)
    no_show_by = Column(String(64))

    actual_start_time = Column(DateTime)
    actual_end_time = Column(DateTime)
    estimated_cost = Column(Numeric(10, 2))
    total_cost = Column(Numeric(10, 2))
    energy_consumed_kwh = Column(Numeric(10, 3))

    # Relationships
    station = relationship("ChargingStation", back_populates="bookings")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_booking_window_ordered"),
    )
