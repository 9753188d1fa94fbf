import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import models  # noqa: F401  registers tables on Base.metadata
from app.config import settings
from app.database import Base, SessionLocal, engine
from app.errors import MalformedInput, ReferenceCreationFailure, StorageFailure
from app.inventory_import import import_inventory_upload
from app.upload_reports import branch_freshness, list_upload_history

logging.basicConfig(level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Inventory Upload Service", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    # Authentication happens upstream; it forwards the numeric user id.
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    try:
        return int(x_user_id.strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid user identity") from exc


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.post("/upload")
async def upload_inventory(
    file: UploadFile = File(...),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    max_bytes = settings.upload_max_file_mb * 1024 * 1024
    if file.size is not None and file.size > max_bytes:
        return JSONResponse(
            {"error": f"File exceeds the {settings.upload_max_file_mb}MB upload limit."},
            status_code=400,
        )

    payload = await file.read()
    if len(payload) > max_bytes:
        return JSONResponse(
            {"error": f"File exceeds the {settings.upload_max_file_mb}MB upload limit."},
            status_code=400,
        )

    try:
        result = import_inventory_upload(
            db,
            content=payload,
            filename=file.filename or "upload.xlsx",
            user_id=user_id,
        )
    except MalformedInput as exc:
        return JSONResponse({"error": "Failed to process upload.", "details": str(exc)}, status_code=400)
    except (ReferenceCreationFailure, StorageFailure) as exc:
        logger.error("Upload %s rolled back: %s", file.filename, exc)
        return JSONResponse({"error": "Failed to process upload.", "details": str(exc)}, status_code=500)

    return {
        "success": True,
        "message": "Smart daily update completed successfully!",
        "processingTime": result["processingTimeMs"],
        **result,
    }


@app.get("/upload/history")
def upload_history(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return list_upload_history(db, limit=limit, offset=offset)
    except SQLAlchemyError:
        logger.exception("Unexpected database error fetching upload history")
        return JSONResponse({"error": "Failed to fetch upload history"}, status_code=500)


@app.get("/upload/freshness")
def upload_freshness(
    _user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return branch_freshness(db)
    except SQLAlchemyError:
        logger.exception("Unexpected database error fetching data freshness")
        return JSONResponse({"error": "Failed to fetch data freshness"}, status_code=500)
