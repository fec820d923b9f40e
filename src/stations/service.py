from sqlalchemy.orm import Session
from sqlalchemy import update
from typing import List, Optional, Tuple
import logging
from enum import Enum

from src.models import Booking, ChargingStation
from src.stations.schemas import StationCreate, StationUpdate, StationSearch, StationStatus

logger = logging.getLogger(__name__)

# Booking statuses that still need the station to be open
ACTIVE_BOOKING_STATUSES = ("pending", "approved", "in_progress")

# Station statuses that take the station out of use
DEACTIVATED_STATUSES = frozenset({StationStatus.INACTIVE, StationStatus.OUT_OF_SERVICE})

class StationService:
    @staticmethod
    def get_station_by_id(
        db: Session,
        station_id: int,
        for_update: bool = False
    ) -> Optional[ChargingStation]:
        """Get station by ID.

        With ``for_update`` the row is re-read from the database (bypassing the
        session's identity map) and locked where the backend supports
        ``SELECT ... FOR UPDATE``.
        """
        query = db.query(ChargingStation).filter(ChargingStation.id == station_id)
        if for_update:
            query = query.populate_existing().with_for_update()
        return query.first()

    @staticmethod
    def get_stations(
        db: Session,
        skip: int = 0,
        limit: int = 50,
        search: Optional[StationSearch] = None
    ) -> Tuple[List[ChargingStation], int]:
        """Get stations with optional search filters"""
        query = db.query(ChargingStation)

        if search:
            if search.query:
                pattern = f"%{search.query}%"
                query = query.filter(
                    ChargingStation.name.ilike(pattern) | ChargingStation.location.ilike(pattern)
                )

            if search.connector_type:
                query = query.filter(ChargingStation.connector_type == search.connector_type.value)

            if search.status:
                query = query.filter(ChargingStation.status == search.status.value)

            if search.min_power_kw is not None:
                query = query.filter(ChargingStation.power_rating_kw >= search.min_power_kw)

            if search.only_with_free_slots:
                query = query.filter(ChargingStation.available_slots > 0)

        total = query.count()
        stations = query.order_by(ChargingStation.id).offset(skip).limit(limit).all()

        return stations, total

    @staticmethod
    def create_station(db: Session, station: StationCreate) -> ChargingStation:
        """Create a station with every slot available"""
        data = station.dict()
        data["connector_type"] = station.connector_type.value
        data["status"] = station.status.value

        db_station = ChargingStation(**data, available_slots=station.total_slots)
        db.add(db_station)
        db.commit()
        db.refresh(db_station)

        logger.info("Created charging station %s (%s slots)", db_station.id, db_station.total_slots)
        return db_station

    @staticmethod
    def update_station(
        db: Session,
        station_id: int,
        station_update: StationUpdate
    ) -> Optional[ChargingStation]:
        """Update station details.

        A change to ``total_slots`` shifts ``available_slots`` by the same
        amount in one conditional statement, so slots held by live bookings
        are never lost.
        """
        db_station = StationService.get_station_by_id(db, station_id)
        if not db_station:
            return None

        update_data = station_update.dict(exclude_unset=True)
        new_total = update_data.pop("total_slots", None)

        new_status = update_data.get("status")
        if (
            new_status in DEACTIVATED_STATUSES
            and new_status.value != db_station.status
            and StationService.count_active_bookings(db, station_id)
        ):
            raise ValueError("Cannot deactivate station with active bookings")

        for field, value in update_data.items():
            if isinstance(value, Enum):
                value = value.value
            setattr(db_station, field, value)

        if new_total is not None and new_total != db_station.total_slots:
            delta = new_total - db_station.total_slots
            result = db.execute(
                update(ChargingStation)
                .where(
                    ChargingStation.id == station_id,
                    ChargingStation.total_slots == db_station.total_slots,
                    ChargingStation.available_slots + delta >= 0
                )
                .values(
                    total_slots=new_total,
                    available_slots=ChargingStation.available_slots + delta
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ValueError(
                    "Cannot reduce total slots below the number of slots held by active bookings"
                )

        db.commit()
        db.refresh(db_station)
        return db_station

    @staticmethod
    def deactivate_station(db: Session, station_id: int) -> Optional[ChargingStation]:
        """Soft delete: the station is set inactive and its bookings are kept"""
        station = StationService.update_station(
            db, station_id, StationUpdate(status=StationStatus.INACTIVE)
        )
        if station:
            logger.info("Deactivated charging station %s", station_id)
        return station

    @staticmethod
    def count_active_bookings(db: Session, station_id: int) -> int:
        """Bookings on the station that are pending, approved or in progress"""
        return db.query(Booking).filter(
            Booking.station_id == station_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        ).count()

    @staticmethod
    def adjust_available_slots(db: Session, station_id: int, delta: int) -> bool:
        """Atomically move ``available_slots`` by ``delta`` within its bounds.

        The statement only matches when the result stays inside
        ``[0, total_slots]``, so a decrement at zero or an increment at full
        capacity is refused rather than clamped.  Does not commit; the caller
        owns the transaction.
        """
        result = db.execute(
            update(ChargingStation)
            .where(
                ChargingStation.id == station_id,
                ChargingStation.available_slots + delta >= 0,
                ChargingStation.available_slots + delta <= ChargingStation.total_slots
            )
            .values(available_slots=ChargingStation.available_slots + delta)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
