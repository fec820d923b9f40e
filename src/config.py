from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./ev_charging.db"
    DATABASE_ECHO: bool = False

    # Security
    SECRET_KEY: str = "dev-only-change-me"

    # Application
    PROJECT_NAME: str = "EV Charging Station Booking System"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Booking policy
    BOOKING_WINDOW_DAYS: int = 7
    MODIFICATION_CUTOFF_HOURS: int = 12
    NO_SHOW_GRACE_MINUTES: int = 15
    DEFAULT_MAX_BOOKING_DURATION_MINUTES: int = 240
    CHARGING_EFFICIENCY: float = 0.8

    # QR validation window around the booked slot
    QR_EARLY_ENTRY_MINUTES: int = 15
    QR_LATE_EXIT_MINUTES: int = 15

    # Concurrency
    STATION_LOCK_TIMEOUT_SECONDS: float = 10.0

    # Notifications
    NOTIFICATION_HISTORY_SIZE: int = 1000

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
