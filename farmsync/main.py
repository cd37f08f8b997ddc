from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.requests import Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
import logging
import time

from . import crud, ingest, models, schemas
from .config import Config
from .database import Base, build_engine, build_session_factory, get_db
from .report_routes import router as report_router

logger = logging.getLogger(__name__)

router = APIRouter()


def _isoformat(value):
    return value.isoformat() if value else None


def farmer_to_dict(farmer, reading_count=0, last_reading=None):
    return {
        "farmer_id": farmer.farmer_id,
        "phone_number": farmer.phone_number,
        "created_at": farmer.created_at,
        "synced_at": _isoformat(farmer.synced_at),
        "reading_count": reading_count or 0,
        "last_reading": last_reading,
    }


def reading_to_dict(reading, phone_number=None):
    result = {
        "id": reading.id,
        "farmer_id": reading.farmer_id,
        "reading_timestamp": reading.reading_timestamp,
    }
    for field in crud.READING_FIELDS:
        result[field] = getattr(reading, field)
    result["synced_at"] = _isoformat(reading.synced_at)
    result["phone_number"] = phone_number
    return result


def settings_to_dict(settings):
    return {
        "sms_enabled": bool(settings.sms_enabled),
        "message_template": settings.message_template,
        "updated_at": _isoformat(settings.updated_at),
    }


def pending_request_to_dict(sync_request):
    if sync_request is None:
        return None
    return {
        "id": sync_request.id,
        "requested_at": _isoformat(sync_request.requested_at),
        "status": sync_request.status,
    }


def last_sync_to_dict(sync_request):
    if sync_request is None:
        return None
    return {
        "id": sync_request.id,
        "completed_at": _isoformat(sync_request.completed_at),
        "status": sync_request.status,
    }


# ==================== BASIC ENDPOINTS ====================

@router.get("/")
def root():
    return {
        "name": "Farm Sync API",
        "status": "healthy",
        "endpoints": {
            "farmers": "GET /farmers?search=",
            "readings": "GET /readings?farmer_id=&limit=&offset=",
            "sms_settings": "GET|POST /sms_settings",
            "sync": "POST /sync",
            "trigger_sync": "GET|POST /trigger_sync",
            "reports": ["GET /report/csv", "GET /report/summary", "GET /report/readings.xlsx"]
        }
    }


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database = "disconnected"
    return {
        "success": database == "connected",
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "timestamp": time.time()
    }


# ==================== DEVICE SYNC ====================

@router.post("/sync", response_model=schemas.SyncResponse)
def sync_device_data(payload: schemas.SyncPayload, db: Session = Depends(get_db)):
    """
    Bulk upload of farmers.csv and datalog.csv from a field device.

    Safe to resend: farmers are upserted and already-stored readings are skipped.
    The response carries the SMS settings and server clock for the device.
    """
    logger.info(
        f"Received sync: farmers_csv {len(payload.farmers_csv)} bytes, "
        f"datalog_csv {len(payload.datalog_csv)} bytes"
    )

    result = ingest.ingest_sync_payload(db, payload.farmers_csv, payload.datalog_csv)
    settings = crud.get_or_create_settings(db)

    return {
        "success": True,
        "message": f"Sync complete. Farmers: {result.farmers_imported}, Readings: {result.readings_imported}",
        "farmers_imported": result.farmers_imported,
        "readings_imported": result.readings_imported,
        "sms_settings": {
            "enabled": bool(settings.sms_enabled),
            "template": settings.message_template,
        },
        "server_time": ingest.server_time(),
    }


def _complete_sync(db: Session, sync_status: str):
    resolved = crud.resolve_pending(db, sync_status)
    return {
        "success": True,
        "message": f"Sync marked as {sync_status}",
        "resolved": resolved
    }


@router.get("/trigger_sync")
def trigger_sync_status(
    action: Optional[str] = None,
    sync_status: str = Query(models.SYNC_COMPLETED, alias="status"),
    db: Session = Depends(get_db)
):
    """
    Device poll for a pending sync request.

    With ?action=complete&status=completed|failed the device reports the
    outcome and every pending request is resolved.
    """
    if action == "complete":
        return _complete_sync(db, sync_status)

    pending, last_sync = crud.poll_pending(db)
    return {
        "success": True,
        "sync_pending": pending is not None,
        "pending_request": pending_request_to_dict(pending),
        "last_sync": last_sync_to_dict(last_sync)
    }


@router.post("/trigger_sync")
def create_sync_request(
    action: Optional[str] = None,
    sync_status: str = Query(models.SYNC_COMPLETED, alias="status"),
    db: Session = Depends(get_db)
):
    """
    Dashboard "sync now" button. Idempotent while a request is pending.

    ?action=complete resolves the pending request as on GET.
    """
    if action == "complete":
        return _complete_sync(db, sync_status)

    sync_request, created = crud.request_sync(db)
    if not created:
        message = "Sync request already pending"
    else:
        message = "Sync request created. Waiting for the device to connect and sync."
    return {
        "success": True,
        "message": message,
        "created": created,
        "request_id": sync_request.id
    }


# ==================== DASHBOARD ====================

@router.get("/farmers")
def get_farmers(search: Optional[str] = None, db: Session = Depends(get_db)):
    """
    List farmers with reading count and latest reading.

    `total` is the number of registered farmers regardless of the search;
    `matched` is the number of farmers returned.
    """
    search = (search or "").strip()
    rows = crud.list_farmers(db, search or None)
    farmers = [farmer_to_dict(farmer, reading_count, last_reading)
               for farmer, reading_count, last_reading in rows]

    return {
        "success": True,
        "total": crud.count_farmers(db),
        "matched": len(farmers),
        "farmers": farmers
    }


@router.get("/readings")
def get_readings(
    farmer_id: Optional[str] = None,
    limit: int = Config.READINGS_DEFAULT_LIMIT,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    """
    Readings with farmer phone number, newest first, plus stats over the whole filtered set
    """
    farmer_id = (farmer_id or "").strip() or None
    limit, offset = crud.clamp_page(limit, offset)
    total, stats, rows = crud.list_readings(db, farmer_id, limit, offset)

    return {
        "success": True,
        "total": total,
        "limit": limit,
        "offset": offset,
        "stats": stats,
        "readings": [reading_to_dict(reading, phone_number) for reading, phone_number in rows]
    }


@router.get("/sms_settings")
def get_sms_settings(db: Session = Depends(get_db)):
    settings = crud.get_or_create_settings(db)
    return {"success": True, "settings": settings_to_dict(settings)}


@router.post("/sms_settings")
def save_sms_settings(payload: schemas.SmsSettingsUpdate, db: Session = Depends(get_db)):
    crud.update_settings(db, payload.sms_enabled, payload.message_template)
    return {"success": True, "message": "SMS settings saved successfully"}


# ==================== ERROR HANDLERS ====================

def _error_response(status_code, message, headers=None):
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=headers
    )


def _validation_message(exc: RequestValidationError):
    errors = exc.errors()
    if any(error.get("type") == "json_invalid" for error in errors):
        return "Invalid JSON payload"

    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query"))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
        return _error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning(f"Rejected {request.method} {request.url.path}: {message}")
        return _error_response(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(crud.ValidationError)
    async def validation_error_handler(request: Request, exc: crud.ValidationError):
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(crud.PersistenceError)
    async def persistence_error_handler(request: Request, exc: crud.PersistenceError):
        logger.error(f"Persistence error on {request.url.path}: {exc}")
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.url.path}: {exc}", exc_info=True)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Database error: {exc}")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


# ==================== APPLICATION ====================

def create_app(engine=None) -> FastAPI:
    """
    Build the API around an engine (a new one from Config.DATABASE_URL if not given).

    The engine and session factory live on app.state; the lifespan creates
    missing tables on startup and disposes the engine on shutdown.
    """
    engine = engine if engine is not None else build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            Base.metadata.create_all(bind=engine)
            with engine.connect():
                logger.info("✅ Database connection successful!")
        except SQLAlchemyError as e:
            logger.error(f"❌ Database connection failed: {e}")

        yield  # App runs here

        logger.info("🛑 Application shutting down...")
        engine.dispose()

    app = FastAPI(
        title="Farm Sync API",
        description="Backend service collecting farmer records and soil readings from field devices",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(f"{request.method} {request.url.path} - {response.status_code} - {process_time:.3f}s")
        return response

    register_exception_handlers(app)

    app.include_router(router)
    app.include_router(report_router)

    return app


logging.basicConfig(level=Config.LOG_LEVEL)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("farmsync.main:app", host="0.0.0.0", port=8000)
