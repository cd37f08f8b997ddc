from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import desc, distinct, func, or_
from typing import Optional, Tuple
import logging
from . import models
from .config import Config

logger = logging.getLogger(__name__)

READING_FIELDS = ("humidity", "temperature", "ec", "ph", "nitrogen", "phosphorus", "potassium")


class ValidationError(Exception):
    """Missing or malformed request data, raised before anything is written"""
    pass


class PersistenceError(Exception):
    """Store unreachable, constraint violation or failed transaction"""
    pass


# ==================== SMS SETTINGS ====================

def get_or_create_settings(db: Session) -> models.SmsSettings:
    """Return the settings row, creating it with the default template if missing"""
    settings = db.get(models.SmsSettings, models.SMS_SETTINGS_ID)
    if settings is not None:
        return settings

    settings = models.SmsSettings(
        id=models.SMS_SETTINGS_ID,
        sms_enabled=False,
        message_template=models.DEFAULT_SMS_TEMPLATE,
    )
    db.add(settings)
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()
        return db.get(models.SmsSettings, models.SMS_SETTINGS_ID)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not create SMS settings: {e}") from e

    logger.info("Created default SMS settings")
    db.refresh(settings)
    return settings


def update_settings(db: Session, sms_enabled: bool, message_template: Optional[str]) -> models.SmsSettings:
    template = (message_template or "").strip()
    if not template:
        raise ValidationError("Message template cannot be empty")

    settings = db.get(models.SmsSettings, models.SMS_SETTINGS_ID)
    if settings is None:
        settings = models.SmsSettings(id=models.SMS_SETTINGS_ID)
        db.add(settings)

    settings.sms_enabled = bool(sms_enabled)
    settings.message_template = template
    settings.updated_at = models.utcnow()

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not save SMS settings: {e}") from e

    logger.info(f"SMS settings saved (enabled={settings.sms_enabled})")
    db.refresh(settings)
    return settings


# ==================== SYNC REQUESTS ====================

def get_pending_request(db: Session) -> Optional[models.SyncRequest]:
    return db.query(models.SyncRequest)\
             .filter(models.SyncRequest.status == models.SYNC_PENDING)\
             .order_by(desc(models.SyncRequest.requested_at), desc(models.SyncRequest.id))\
             .first()


def get_last_settled_request(db: Session) -> Optional[models.SyncRequest]:
    return db.query(models.SyncRequest)\
             .filter(models.SyncRequest.status.in_([models.SYNC_COMPLETED, models.SYNC_FAILED]))\
             .order_by(desc(models.SyncRequest.completed_at), desc(models.SyncRequest.id))\
             .first()


def request_sync(db: Session) -> Tuple[models.SyncRequest, bool]:
    """
    Queue a sync request for the device.

    Returns (request, created). When a request is already pending it is
    returned unchanged with created=False.
    """
    existing = get_pending_request(db)
    if existing:
        logger.info(f"Sync request {existing.id} already pending")
        return existing, False

    sync_request = models.SyncRequest(status=models.SYNC_PENDING, requested_at=models.utcnow())
    db.add(sync_request)
    try:
        db.commit()
    except IntegrityError as e:
        # Lost the race against a concurrent request, the partial unique index kept it single
        db.rollback()
        existing = get_pending_request(db)
        if existing is None:
            raise PersistenceError(f"Could not create sync request: {e}") from e
        return existing, False
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not create sync request: {e}") from e

    db.refresh(sync_request)
    logger.info(f"Sync request {sync_request.id} created")
    return sync_request, True


def poll_pending(db: Session) -> Tuple[Optional[models.SyncRequest], Optional[models.SyncRequest]]:
    """Return (latest pending request, latest completed/failed request)"""
    return get_pending_request(db), get_last_settled_request(db)


def resolve_pending(db: Session, status: str, commit: bool = True) -> int:
    """
    Move every pending request to `status` ("completed" or "failed").

    With commit=False the update joins the caller's transaction.
    Returns the number of requests resolved.
    """
    if status not in (models.SYNC_COMPLETED, models.SYNC_FAILED):
        raise ValidationError(f"Invalid sync status '{status}', expected 'completed' or 'failed'")

    resolved = db.query(models.SyncRequest)\
                 .filter(models.SyncRequest.status == models.SYNC_PENDING)\
                 .update(
                     {
                         models.SyncRequest.status: status,
                         models.SyncRequest.completed_at: models.utcnow(),
                     },
                     synchronize_session=False,
                 )

    if commit:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Could not update sync requests: {e}") from e
        logger.info(f"Marked {resolved} pending sync request(s) as {status}")

    return resolved


# ==================== FARMERS ====================

def count_farmers(db: Session) -> int:
    return db.query(func.count(models.Farmer.farmer_id)).scalar() or 0


def list_farmers(db: Session, search: Optional[str] = None):
    """
    Farmers with their reading count and latest reading timestamp, ordered by id.

    `search` matches farmer_id or phone_number by substring.
    Rows are (Farmer, reading_count, last_reading) tuples.
    """
    query = db.query(
        models.Farmer,
        func.count(models.SoilReading.id).label("reading_count"),
        func.max(models.SoilReading.reading_timestamp).label("last_reading"),
    ).outerjoin(
        models.SoilReading, models.SoilReading.farmer_id == models.Farmer.farmer_id
    )

    if search:
        query = query.filter(or_(
            models.Farmer.farmer_id.contains(search, autoescape=True),
            models.Farmer.phone_number.contains(search, autoescape=True),
        ))

    return query.group_by(
        models.Farmer.farmer_id,
        models.Farmer.phone_number,
        models.Farmer.created_at,
        models.Farmer.synced_at,
    ).order_by(models.Farmer.farmer_id).all()


# ==================== READINGS ====================

def clamp_page(limit: int, offset: int, max_limit: int = None) -> Tuple[int, int]:
    max_limit = Config.READINGS_PAGE_LIMIT if max_limit is None else max_limit
    return min(max(int(limit), 0), max_limit), max(int(offset), 0)


def _reading_filters(farmer_id: Optional[str]):
    if farmer_id:
        return [models.SoilReading.farmer_id == farmer_id]
    return []


def reading_stats(db: Session, farmer_id: Optional[str] = None) -> dict:
    """Count, distinct farmers and field averages over every matching reading"""
    row = db.query(
        func.count(models.SoilReading.id),
        func.count(distinct(models.SoilReading.farmer_id)),
        *[func.avg(getattr(models.SoilReading, field)) for field in READING_FIELDS]
    ).select_from(models.SoilReading).join(
        models.Farmer, models.SoilReading.farmer_id == models.Farmer.farmer_id
    ).filter(*_reading_filters(farmer_id)).one()

    stats = {
        "total_readings": row[0] or 0,
        "unique_farmers": row[1] or 0,
    }
    for field, value in zip(READING_FIELDS, row[2:]):
        stats[f"avg_{field}"] = float(value) if value is not None else None
    return stats


def list_readings(db: Session, farmer_id: Optional[str] = None, limit: int = 100, offset: int = 0):
    """
    One page of readings, most recently inserted first.

    Returns (total, stats, rows) where total and stats cover the whole
    filtered set and rows are (SoilReading, phone_number) tuples.
    """
    limit, offset = clamp_page(limit, offset)

    rows = db.query(models.SoilReading, models.Farmer.phone_number)\
             .join(models.Farmer, models.SoilReading.farmer_id == models.Farmer.farmer_id)\
             .filter(*_reading_filters(farmer_id))\
             .order_by(desc(models.SoilReading.id))\
             .offset(offset)\
             .limit(limit)\
             .all()

    stats = reading_stats(db, farmer_id)
    return stats["total_readings"], stats, rows


def readings_for_report(db: Session, farmer_id: Optional[str] = None):
    """All matching readings ordered by farmer then device timestamp"""
    return db.query(models.SoilReading, models.Farmer.phone_number)\
             .join(models.Farmer, models.SoilReading.farmer_id == models.Farmer.farmer_id)\
             .filter(*_reading_filters(farmer_id))\
             .order_by(models.SoilReading.farmer_id, models.SoilReading.reading_timestamp)\
             .all()
