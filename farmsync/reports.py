# farmsync/reports.py
from fastapi import HTTPException
from sqlalchemy.orm import Session
import logging
from datetime import datetime
from typing import Optional
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils import get_column_letter
import csv
import io
import re
from . import crud

logger = logging.getLogger(__name__)

CSV_HEADER = ["Farmer ID", "Phone", "Timestamp", "Humidity", "Temperature", "EC", "pH",
              "Nitrogen", "Phosphorus", "Potassium"]

PH_GOOD = "good"
PH_WARN = "warn"
PH_BAD = "bad"


def get_ph_band(ph):
    """Classify a pH value: 6.0-7.5 good, 5.5-8.0 warning, anything else bad"""
    if ph is None:
        return None
    ph = float(ph)
    if 6.0 <= ph <= 7.5:
        return PH_GOOD
    if 5.5 <= ph <= 8.0:
        return PH_WARN
    return PH_BAD


def get_ph_style(band):
    """Get Excel fill and font for a pH band"""
    if band == PH_GOOD:
        return PatternFill(start_color="90EE90", end_color="90EE90", fill_type="solid"), Font(color="000000")  # Light green
    elif band == PH_WARN:
        return PatternFill(start_color="FFA500", end_color="FFA500", fill_type="solid"), Font(color="000000")  # Orange
    else:
        return PatternFill(start_color="8B0000", end_color="8B0000", fill_type="solid"), Font(color="FFFFFF")  # Dark red, white text


def safe_filename(text):
    """Convert text to ASCII-safe filename"""
    text = re.sub(r'[^\x00-\x7F]+', '_', text)
    text = re.sub(r'[<>:"/\\|?*\s]', '_', text)
    return text


def _reading_values(reading):
    return [getattr(reading, field) for field in crud.READING_FIELDS]


def build_readings_csv(rows) -> str:
    """CSV export of (SoilReading, phone_number) rows"""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for reading, phone_number in rows:
        writer.writerow([reading.farmer_id, phone_number, reading.reading_timestamp] + _reading_values(reading))
    return output.getvalue()


def summarize_by_farmer(rows):
    """Per-farmer reading counts and averages, ordered by farmer_id"""
    summary = {}
    for reading, phone_number in rows:
        entry = summary.setdefault(reading.farmer_id, {
            "farmer_id": reading.farmer_id,
            "phone_number": phone_number,
            "reading_count": 0,
            "first_reading": reading.reading_timestamp,
            "last_reading": reading.reading_timestamp,
            "_totals": [0.0] * len(crud.READING_FIELDS),
        })
        entry["reading_count"] += 1
        entry["first_reading"] = min(entry["first_reading"], reading.reading_timestamp)
        entry["last_reading"] = max(entry["last_reading"], reading.reading_timestamp)
        entry["_totals"] = [total + value for total, value in zip(entry["_totals"], _reading_values(reading))]

    farmers = []
    for farmer_id in sorted(summary):
        entry = summary[farmer_id]
        totals = entry.pop("_totals")
        for field, total in zip(crud.READING_FIELDS, totals):
            entry[f"avg_{field}"] = round(total / entry["reading_count"], 2)
        farmers.append(entry)
    return farmers


def generate_readings_workbook(db: Session, farmer_id: Optional[str] = None):
    """
    Build an Excel report of soil readings, optionally for one farmer.

    Returns a dict with the filename and the workbook bytes.
    """
    logger.info(f"Generating readings workbook (farmer_id={farmer_id or 'all'})")

    rows = crud.readings_for_report(db, farmer_id)
    if not rows:
        raise HTTPException(status_code=404, detail="No readings found for the specified criteria")

    stats = crud.reading_stats(db, farmer_id)

    wb = Workbook()
    ws = wb.active
    if ws is None:
        ws = wb.create_sheet("Soil Readings")
    else:
        ws.title = "Soil Readings"

    header_font = Font(bold=True, size=12)
    border = Border(left=Side(style='thin'), right=Side(style='thin'),
                    top=Side(style='thin'), bottom=Side(style='thin'))
    center_align = Alignment(horizontal='center', vertical='center')

    ws.merge_cells(f'A1:{get_column_letter(len(CSV_HEADER))}1')
    title_cell = ws.cell(row=1, column=1, value="Soil Readings Report - Auto Generated")
    title_cell.font = Font(bold=True, size=14)
    title_cell.alignment = center_align

    ws.cell(row=3, column=1, value="Farmer:")
    ws.cell(row=3, column=3, value=farmer_id or "All farmers")
    ws.cell(row=4, column=1, value="Generated:")
    ws.cell(row=4, column=3, value=datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    header_row = 6
    for col, header in enumerate(CSV_HEADER, 1):
        cell = ws.cell(row=header_row, column=col, value=header)
        cell.font = header_font
        cell.border = border
        cell.alignment = center_align

    ph_column = CSV_HEADER.index("pH") + 1
    for row_idx, (reading, phone_number) in enumerate(rows, header_row + 1):
        values = [reading.farmer_id, phone_number, reading.reading_timestamp] + _reading_values(reading)
        for col, value in enumerate(values, 1):
            ws.cell(row=row_idx, column=col, value=value).border = border

        fill, font = get_ph_style(get_ph_band(reading.ph))
        ph_cell = ws.cell(row=row_idx, column=ph_column)
        ph_cell.fill = fill
        ph_cell.font = font

    for col in range(1, len(CSV_HEADER) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 15

    # Summary sheet
    summary_ws = wb.create_sheet("Summary")
    summary_ws.cell(row=1, column=1, value="Metric").font = header_font
    summary_ws.cell(row=1, column=2, value="Value").font = header_font
    for row_idx, (name, value) in enumerate(stats.items(), 2):
        summary_ws.cell(row=row_idx, column=1, value=name)
        summary_ws.cell(row=row_idx, column=2, value=round(value, 2) if isinstance(value, float) else value)
    summary_ws.column_dimensions['A'].width = 20
    summary_ws.column_dimensions['B'].width = 15

    file_stream = io.BytesIO()
    wb.save(file_stream)

    suffix = safe_filename(farmer_id) if farmer_id else "all"
    filename = f"soil_readings_{suffix}_{datetime.now().strftime('%Y%m%d')}.xlsx"

    logger.info(f"Workbook generated with {len(rows)} readings")
    return {
        "filename": filename,
        "total_readings": len(rows),
        "file_data": file_stream.getvalue()
    }
