# farmsync/report_routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from fastapi.responses import StreamingResponse
from typing import Optional
import logging
import io
import time

from .database import get_db
from .reports import build_readings_csv, generate_readings_workbook, summarize_by_farmer
from . import crud

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/report", tags=["reports"])


@router.get("/csv")
def readings_csv_report(farmer_id: Optional[str] = None, db: Session = Depends(get_db)):
    """
    CSV export of soil readings, ordered by farmer and device timestamp
    """
    farmer_id = (farmer_id or "").strip() or None
    rows = crud.readings_for_report(db, farmer_id)

    return {
        "success": True,
        "total_readings": len(rows),
        "csv_data": build_readings_csv(rows),
        "generated_at": time.time()
    }


@router.get("/summary")
def readings_summary(farmer_id: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Aggregate statistics plus a per-farmer breakdown
    """
    farmer_id = (farmer_id or "").strip() or None
    rows = crud.readings_for_report(db, farmer_id)
    timestamps = [reading.reading_timestamp for reading, _ in rows]

    return {
        "success": True,
        "stats": crud.reading_stats(db, farmer_id),
        "timestamp_range": {
            "first": min(timestamps) if timestamps else None,
            "last": max(timestamps) if timestamps else None
        },
        "farmers": summarize_by_farmer(rows)
    }


@router.get("/readings.xlsx")
def download_readings_workbook(farmer_id: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Download the Excel report of soil readings
    """
    farmer_id = (farmer_id or "").strip() or None
    result = generate_readings_workbook(db, farmer_id)

    return StreamingResponse(
        io.BytesIO(result["file_data"]),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={result['filename']}"}
    )
