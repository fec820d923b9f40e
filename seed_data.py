#!/usr/bin/env python3

from decimal import Decimal

from src.database import Base, SessionLocal, engine
from src.models import Booking, ChargingStation

def create_seed_data():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        print("🚀 Creating seed data for EV Charging Station Booking System...")

        # Clear existing data (in reverse dependency order)
        print("Clearing existing data...")
        db.query(Booking).delete()
        db.query(ChargingStation).delete()

        # Charging Stations
        print("Creating charging stations...")
        stations_data = [
            ("Colombo City Centre Fast Charge", "Colombo 02", "137 Sir James Peiris Mawatha", "CCS", "150.00", "85.00", 4, 60),
            ("Liberty Plaza EV Hub", "Colombo 03", "250 R. A. De Mel Mawatha", "Type2", "22.00", "62.50", 6, 240),
            ("Kandy Lake Charging Point", "Kandy", "Dalada Veediya", "CHAdeMO", "50.00", "70.00", 2, 120),
            ("Galle Fort Supercharger", "Galle", "Church Street", "Tesla", "250.00", "95.00", 8, 60),
            ("Negombo Beach Road Charger", "Negombo", "Porutota Road", "Type1", "7.40", "55.00", 2, 240),
        ]

        stations = []
        for name, location, address, connector, power, price, slots, max_minutes in stations_data:
            stations.append(ChargingStation(
                name=name,
                location=location,
                address=address,
                connector_type=connector,
                power_rating_kw=Decimal(power),
                price_per_kwh=Decimal(price),
                total_slots=slots,
                available_slots=slots,
                status="active",
                max_booking_duration_minutes=max_minutes,
                operator_id="operator-1"
            ))

        # One station under maintenance to exercise the unavailable path
        stations.append(ChargingStation(
            name="Jaffna Town Charger",
            location="Jaffna",
            address="Hospital Road",
            connector_type="Type2",
            power_rating_kw=Decimal("11.00"),
            price_per_kwh=Decimal("60.00"),
            total_slots=2,
            available_slots=2,
            status="maintenance",
            max_booking_duration_minutes=240,
            operator_id="operator-2"
        ))

        db.add_all(stations)

        # Commit all changes
        db.commit()
        print("✅ Successfully created seed data for EV Charging Station Booking System!")
        print(f"Created:")
        print(f"  - {len(stations)} charging stations")
        print(f"  - {sum(s.total_slots for s in stations)} charging slots")

    except Exception as e:
        print(f"❌ Error creating seed data: {e}")
        db.rollback()
        raise
    finally:
        db.close()

if __name__ == "__main__":
    create_seed_data()
