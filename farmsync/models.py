# farmsync/models.py
from sqlalchemy import Column, String, Float, Boolean, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint, text
from datetime import datetime, timezone
from .database import Base

SYNC_PENDING = "pending"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"

SMS_SETTINGS_ID = 1

DEFAULT_SMS_TEMPLATE = (
    "Farm Report for ID:{farmer_id}\n"
    "Moisture:{humidity}%\n"
    "Temp:{temperature}C\n"
    "pH:{ph}\n"
    "EC:{ec}\n"
    "N:{nitrogen} P:{phosphorus} K:{potassium}\n"
    "Date:{timestamp}"
)


def utcnow():
    return datetime.now(timezone.utc)


class Farmer(Base):
    __tablename__ = "farmers"

    farmer_id = Column(String(32), primary_key=True)
    phone_number = Column(String(32), nullable=False)

    # Device-supplied creation date, kept as sent and never overwritten
    created_at = Column(String(32), nullable=False)

    # Last successful sync that touched this farmer
    synced_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SoilReading(Base):
    __tablename__ = "soil_readings"
    __table_args__ = (
        UniqueConstraint("farmer_id", "reading_timestamp", name="uq_soil_reading_farmer_timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    farmer_id = Column(String(32), ForeignKey("farmers.farmer_id"), nullable=False, index=True)

    # Device-local time, the device clock may drift so this is not an ordering key
    reading_timestamp = Column(String(32), nullable=False)

    # Sensor values
    humidity = Column(Float, nullable=False, default=0.0)
    temperature = Column(Float, nullable=False, default=0.0)
    ec = Column(Float, nullable=False, default=0.0)
    ph = Column(Float, nullable=False, default=0.0)
    nitrogen = Column(Float, nullable=False, default=0.0)
    phosphorus = Column(Float, nullable=False, default=0.0)
    potassium = Column(Float, nullable=False, default=0.0)

    synced_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SyncRequest(Base):
    __tablename__ = "sync_requests"
    __table_args__ = (
        # At most one pending row. Only created where partial indexes exist, elsewhere it
        # would become UNIQUE(status) and reject a second settled row
        Index(
            "uq_sync_requests_single_pending",
            "status",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ).ddl_if(dialect=("postgresql", "sqlite")),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    requested_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    status = Column(String(16), nullable=False, default=SYNC_PENDING)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class SmsSettings(Base):
    __tablename__ = "sms_settings"

    id = Column(Integer, primary_key=True, default=SMS_SETTINGS_ID)
    sms_enabled = Column(Boolean, nullable=False, default=False)
    message_template = Column(Text, nullable=False, default=DEFAULT_SMS_TEMPLATE)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
