# farmsync/ingest.py
"""
Bulk sync ingestion for the field devices.

The device uploads the raw contents of farmers.csv and datalog.csv from its
SD card. Both files are imported in a single transaction: farmers first (so
readings for farmers registered in the same batch satisfy the foreign key),
then readings, then any pending sync request is marked completed. A failure
anywhere rolls the whole call back.

Re-sending the same payload is safe. Farmers are upserted by farmer_id and a
reading whose (farmer_id, reading_timestamp) already exists is skipped.
Lines that are blank or too short are skipped rather than failing the sync.
"""
import csv
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models
from .config import Config

logger = logging.getLogger(__name__)

FARMER_MIN_FIELDS = 3    # farmer_id, phone_number, created_at
READING_MIN_FIELDS = 9   # farmer_id, timestamp, humidity, temperature, ec, ph, nitrogen, phosphorus, potassium

_LEADING_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


@dataclass
class IngestResult:
    farmers_imported: int = 0
    readings_imported: int = 0
    duplicate_readings: int = 0
    skipped_lines: int = 0
    resolved_requests: int = 0


def parse_number(value: str) -> float:
    """Lenient float parsing: "12.5" -> 12.5, "7ppm" -> 7.0, "" or "n/a" -> 0.0"""
    value = value.strip()
    try:
        number = float(value)
    except ValueError:
        match = _LEADING_NUMBER.match(value)
        number = float(match.group(0)) if match else 0.0
    # float() accepts "nan" and "inf", sensors never report those
    return number if math.isfinite(number) else 0.0


def iter_csv_lines(payload: str) -> Iterator[Tuple[int, Optional[List[str]]]]:
    """
    Yield (line_number, fields) for every non-blank line after the header.

    Fields are stripped. Lines the csv module cannot parse yield None.
    """
    lines = payload.strip().split("\n")
    for line_number, line in enumerate(lines[1:], start=2):
        line = line.strip()
        if not line:
            continue
        try:
            fields = next(csv.reader([line]))
        except csv.Error:
            yield line_number, None
            continue
        yield line_number, [field.strip() for field in fields]


def _upsert_farmer(db: Session, farmer_id: str, phone_number: str, created_at: str, now: datetime):
    farmer = db.get(models.Farmer, farmer_id)
    if farmer:
        # created_at is kept from the first sync
        farmer.phone_number = phone_number
        farmer.synced_at = now
    else:
        db.add(models.Farmer(
            farmer_id=farmer_id,
            phone_number=phone_number,
            created_at=created_at,
            synced_at=now,
        ))
    # Later lines of the same batch must see this farmer
    db.flush()


def _reading_exists(db: Session, farmer_id: str, reading_timestamp: str) -> bool:
    return db.query(models.SoilReading.id).filter(
        models.SoilReading.farmer_id == farmer_id,
        models.SoilReading.reading_timestamp == reading_timestamp,
    ).first() is not None


def ingest_sync_payload(db: Session, farmers_csv: str, datalog_csv: str) -> IngestResult:
    """
    Import one device upload atomically.

    Raises crud.PersistenceError (after rolling back) if anything fails to
    persist; in that case nothing from this call is stored.
    """
    result = IngestResult()
    now = models.utcnow()

    try:
        # ---- Farmers ----
        for line_number, fields in iter_csv_lines(farmers_csv):
            if not fields or len(fields) < FARMER_MIN_FIELDS or not fields[0]:
                logger.debug(f"farmers_csv line {line_number}: malformed, skipped")
                result.skipped_lines += 1
                continue

            farmer_id, phone_number, created_at = fields[0], fields[1], fields[2]
            _upsert_farmer(db, farmer_id, phone_number, created_at, now)
            result.farmers_imported += 1

        # ---- Readings ----
        for line_number, fields in iter_csv_lines(datalog_csv):
            if not fields or len(fields) < READING_MIN_FIELDS or not fields[0]:
                logger.debug(f"datalog_csv line {line_number}: malformed, skipped")
                result.skipped_lines += 1
                continue

            farmer_id, reading_timestamp = fields[0], fields[1]
            if _reading_exists(db, farmer_id, reading_timestamp):
                result.duplicate_readings += 1
                continue

            values = [parse_number(value) for value in fields[2:READING_MIN_FIELDS]]
            db.add(models.SoilReading(
                farmer_id=farmer_id,
                reading_timestamp=reading_timestamp,
                synced_at=now,
                **dict(zip(crud.READING_FIELDS, values))
            ))
            db.flush()
            result.readings_imported += 1

        result.resolved_requests = crud.resolve_pending(db, models.SYNC_COMPLETED, commit=False)

        db.commit()

    except SQLAlchemyError as e:
        db.rollback()
        cause = getattr(e, "orig", None) or e
        logger.error(f"Sync transaction rolled back: {cause}")
        raise crud.PersistenceError(f"Sync failed: {cause}") from e

    logger.info(
        f"Sync complete: {result.farmers_imported} farmers, {result.readings_imported} readings "
        f"({result.duplicate_readings} duplicates, {result.skipped_lines} malformed lines skipped)"
    )
    return result


def server_time(now: datetime = None) -> dict:
    """Current wall-clock time split into fields the device RTC can be set from"""
    if now is None:
        if Config.SERVER_TIMEZONE:
            now = datetime.now(ZoneInfo(Config.SERVER_TIMEZONE))
        else:
            now = datetime.now()
    return {
        "year": now.year,
        "month": now.month,
        "day": now.day,
        "hour": now.hour,
        "minute": now.minute,
        "second": now.second,
    }
