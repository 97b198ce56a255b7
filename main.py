from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from typing import Optional, Dict, Any, Callable, Union
import os
import asyncio
import time
import traceback
from dotenv import load_dotenv
from starlette.middleware.base import BaseHTTPMiddleware

from errors import ClassNotFoundError, PreconditionError, SessionNotFoundError, StorageError
from google_auth import AuthError, ServiceAccountTokenProvider, StaticTokenProvider
from models import Mark, SessionEntity
from roster_csv import export_absences_csv
from session_manager import Proposal, SessionManager
from sheets_client import (
    InvalidSpreadsheetIdError,
    RemoteUnavailableError,
    SheetsClient,
    SheetsError,
    SpreadsheetNotFoundError,
    SpreadsheetTrashedError,
)
from sync_manager import SyncManager, SYNC_POLICY_DUAL_WRITE

# Load environment variables from this file's directory so running uvicorn from repo root still works
ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(dotenv_path=ENV_PATH)

app = FastAPI(title="CheckPoint Attendance API")

# Check database type from environment
DB_TYPE = os.getenv("DB_TYPE", "file")  # "file" or "mongodb"

if DB_TYPE == "mongodb":
    from mongodb_manager import MongoDBManager
    MONGO_URI = os.getenv("MONGO_URI")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "checkpoint_db")

    if not MONGO_URI:
        raise ValueError("MONGO_URI environment variable not set")

    db = MongoDBManager(mongo_uri=MONGO_URI, db_name=MONGO_DB_NAME)
    print("✅ Using MongoDB for storage")
else:
    from db_manager import DatabaseManager
    db = DatabaseManager(base_dir=os.getenv("DATA_DIR", "data"))
    print("✅ Using file-based storage")

# Environment
APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))

# ==================== REMOTE MIRROR ====================

SYNC_POLICY = os.getenv("SYNC_POLICY", SYNC_POLICY_DUAL_WRITE).strip().lower()
SHEETS_TIMEOUT = float(os.getenv("SHEETS_TIMEOUT", "20"))
GOOGLE_SERVICE_ACCOUNT_FILE = os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE")
GOOGLE_ACCESS_TOKEN = os.getenv("GOOGLE_ACCESS_TOKEN")


def build_sheets_client() -> Optional[SheetsClient]:
    """Sheets client from whichever Google credential is configured, or None"""
    try:
        if GOOGLE_SERVICE_ACCOUNT_FILE:
            provider = ServiceAccountTokenProvider.from_file(GOOGLE_SERVICE_ACCOUNT_FILE, timeout=SHEETS_TIMEOUT)
        elif GOOGLE_ACCESS_TOKEN:
            provider = StaticTokenProvider(GOOGLE_ACCESS_TOKEN)
        else:
            print("⚠️ No Google credentials configured - remote mirror disabled")
            return None
    except AuthError as e:
        print(f"❌ Google credentials unusable, remote mirror disabled: {e}")
        return None
    print("✅ Google Sheets mirror enabled")
    return SheetsClient(provider, timeout=SHEETS_TIMEOUT)


sync = SyncManager(db, build_sheets_client(), policy=SYNC_POLICY)
manager = SessionManager(db, sync=sync)
print(f"✅ Sync policy: {SYNC_POLICY}")

# CORS Configuration
# In production you should set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://yourdomain.com,https://www.yourdomain.com
cors_origins_env = os.getenv("CORS_ORIGINS", "").strip()

cors_kwargs: Dict[str, Any] = {
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if cors_origins_env:
    cors_kwargs["allow_origins"] = [o.strip() for o in cors_origins_env.split(",") if o.strip()]
else:
    cors_kwargs["allow_origins"] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== TIMEOUT MIDDLEWARE ====================

class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request timeouts on awaiting handlers.

    The timeout fires only while the handler is suspended at an await. The
    endpoints below do their store and Google calls synchronously, so those
    are bounded by SHEETS_TIMEOUT on the HTTP client rather than here.
    """

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout)

            duration = time.time() - start_time
            if duration > 5:
                print(f"⚠️ Slow request: {request.method} {request.url.path} took {duration:.2f}s")

            return response

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            print(f"⏱️ Request timeout: {request.method} {request.url.path} after {duration:.2f}s")

            return JSONResponse(
                status_code=504,
                content={
                    "detail": f"Request timeout - operation took longer than {self.timeout} seconds",
                    "error": "GATEWAY_TIMEOUT",
                    "path": str(request.url.path),
                    "method": request.method
                }
            )


app.add_middleware(TimeoutMiddleware, timeout=REQUEST_TIMEOUT)
print(f"✅ Timeout middleware enabled: {REQUEST_TIMEOUT}s per request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        print(f"📥 {request.method} {request.url.path}")

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            status_icon = "✅" if response.status_code < 400 else "❌"
            print(f"{status_icon} {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")

            response.headers["X-Process-Time"] = f"{duration:.4f}"
            return response

        except Exception as e:
            duration = time.time() - start_time
            print(f"❌ {request.method} {request.url.path} - ERROR ({duration:.2f}s): {str(e)}")
            raise


app.add_middleware(RequestLoggingMiddleware)

# ==================== PYDANTIC MODELS ====================

class ClassRequest(BaseModel):
    name: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('Class name is required')
        return v.strip()

class SettingsRequest(BaseModel):
    defaultN: Optional[int] = None
    neverSeenWeight: Optional[float] = None
    cooldownWeight: Optional[float] = None
    csvPath: Optional[str] = None

class SpreadsheetRequest(BaseModel):
    spreadsheet: str  # full sheet URL or bare id

class RosterImportRequest(BaseModel):
    csv: str

class GenerateRequest(BaseModel):
    n: Optional[int] = None
    seed: Optional[Union[int, str]] = None

class MarkRequest(BaseModel):
    studentId: str
    status: str
    reason: Optional[str] = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        v = v.strip().lower()
        if v not in ['present', 'absent']:
            raise ValueError('Status must be present or absent')
        return v

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if v is None or not v.strip():
            return None
        v = v.strip().lower()
        if v not in ['excused', 'unexcused']:
            raise ValueError('Reason must be excused or unexcused')
        return v

# ==================== HELPER FUNCTIONS ====================

def http_error(e: Exception, action: str) -> HTTPException:
    """Map domain exceptions to HTTP errors; anything unexpected is a 500 with a traceback in the log"""
    if isinstance(e, PreconditionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (ClassNotFoundError, SessionNotFoundError, SpreadsheetNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, SpreadsheetTrashedError):
        return HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    if isinstance(e, RemoteUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, SheetsError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, (InvalidSpreadsheetIdError, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, StorageError):
        print(f"[{action}] ❌ Storage error: {e}")
        return HTTPException(status_code=500, detail=f"Failed to {action}: nothing was changed")

    print(f"[{action}] ❌ UNEXPECTED ERROR: {e}")
    traceback.print_exc()
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


def proposal_payload(proposal: Optional[Proposal]) -> Dict[str, Any]:
    if proposal is None:
        return {"session": None}
    return {
        "session": proposal.session.model_dump(exclude_none=True),
        "n": proposal.n,
        "seed": proposal.seed,
        "carryoverOverflow": proposal.carryover_overflow,
    }


def session_summary(s: SessionEntity) -> Dict[str, Any]:
    return {
        **s.model_dump(exclude_none=True),
        "pickCount": len(s.picks),
        "absentCount": len(s.absent_marks()),
    }

# ==================== API ENDPOINTS ====================

@app.get("/")
def read_root():
    return {
        "message": "CheckPoint Attendance API",
        "version": "1.0.0",
        "status": "online",
        "database": DB_TYPE,
        "syncPolicy": sync.policy,
    }


@app.get("/stats")
def get_stats():
    """Get database statistics"""
    return db.get_database_stats()

# ==================== CLASS ENDPOINTS ====================

@app.get("/classes")
async def get_classes():
    classes = manager.load_classes()
    return {
        "classes": [c.model_dump(exclude_none=True) for c in classes],
        "selectedClassId": manager.selected_class_id,
    }


@app.post("/classes")
async def create_class(request: ClassRequest):
    try:
        created = manager.create_class(request.name)
        return {"success": True, "class": created.model_dump(exclude_none=True)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "create class")


@app.post("/classes/{class_id}/select")
async def select_class(class_id: str):
    try:
        cls = manager.select_class(class_id)
        return {"success": True, "class": cls.model_dump(exclude_none=True), "currentN": manager.current_n}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "select class")


@app.get("/classes/{class_id}/students")
async def get_students(class_id: str):
    try:
        students = sorted(manager.get_students(class_id), key=lambda s: s.displayName.casefold())
        return {"students": [s.model_dump(exclude_none=True) for s in students]}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "get students")


@app.post("/classes/{class_id}/roster")
async def import_roster(class_id: str, request: RosterImportRequest):
    try:
        count = manager.import_roster(request.csv, class_id=class_id)
        return {"success": True, "imported": count}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "import roster")


@app.get("/classes/{class_id}/settings")
async def get_settings(class_id: str):
    try:
        return {"settings": manager.get_settings(class_id).model_dump(exclude_none=True)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "get settings")


@app.put("/classes/{class_id}/settings")
async def update_settings(class_id: str, request: SettingsRequest):
    try:
        saved = manager.update_settings(
            class_id=class_id,
            default_n=request.defaultN,
            never_seen_weight=request.neverSeenWeight,
            cooldown_weight=request.cooldownWeight,
            csv_path=request.csvPath,
        )
        return {"success": True, "settings": saved.model_dump(exclude_none=True)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "update settings")


@app.put("/classes/{class_id}/spreadsheet")
async def configure_spreadsheet(class_id: str, request: SpreadsheetRequest):
    try:
        saved = manager.configure_spreadsheet(request.spreadsheet, class_id=class_id)
        return {"success": True, "settings": saved.model_dump(exclude_none=True)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "configure spreadsheet")

# ==================== HISTORY ENDPOINTS ====================

@app.get("/classes/{class_id}/sessions")
async def get_sessions(class_id: str):
    """Saved sessions, most recent first"""
    try:
        return {"sessions": [session_summary(s) for s in manager.get_history(class_id)]}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "get sessions")


@app.delete("/classes/{class_id}/sessions/{session_id}")
async def delete_session(class_id: str, session_id: str):
    """Delete a saved session and reverse its absences"""
    try:
        removed = manager.delete_session(session_id, class_id=class_id)
        return {"success": True, "message": "Session deleted", "removedAbsences": len(removed)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "delete session")


@app.delete("/classes/{class_id}/history")
async def clear_history(class_id: str):
    try:
        counts = manager.clear_history(class_id)
        return {"success": True, "removed": counts}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "clear history")


@app.get("/classes/{class_id}/absences.csv")
async def download_absences(class_id: str):
    try:
        csv_text = export_absences_csv(db.get_ledger(class_id), manager.name_by_id(class_id))
        return Response(
            content=csv_text,
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="absences_{class_id}.csv"'},
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "export absences")

# ==================== SYNC ENDPOINTS ====================

@app.post("/classes/{class_id}/sync/export")
async def export_to_sheets(class_id: str):
    try:
        result = manager.export_remote(class_id)
        return {"success": True, **result}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "export to spreadsheet")


@app.post("/classes/{class_id}/sync/import")
async def import_from_sheets(class_id: str):
    """Destructive restore of the class from its spreadsheet"""
    try:
        result = manager.import_remote(class_id)
        return {"success": True, **result}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "import from spreadsheet")

# ==================== SESSION ENDPOINTS ====================

@app.get("/session/current")
async def get_current_session():
    return {"selectedClassId": manager.selected_class_id, **proposal_payload(manager.proposal)}


@app.post("/session/generate")
async def generate_session(request: GenerateRequest):
    try:
        proposal = manager.generate(n=request.n, seed=request.seed)
        return {"success": True, **proposal_payload(proposal)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "generate picks")


@app.post("/session/redraw")
async def redraw_session(request: GenerateRequest):
    try:
        proposal = manager.redraw(seed=request.seed)
        return {"success": True, **proposal_payload(proposal)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "redraw picks")


@app.put("/session/marks")
async def mark_student(request: MarkRequest):
    try:
        session = manager.annotate(request.studentId, Mark(status=request.status, reason=request.reason))
        return {"success": True, "session": session.model_dump(exclude_none=True)}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "mark student")


@app.post("/session/save")
async def save_session():
    try:
        result = manager.save()
        return {
            "success": True,
            "session": result.session.model_dump(exclude_none=True),
            "absences": len(result.ledger_entries),
            "remoteMirrored": result.remote_mirrored,
            "remoteError": result.remote_error,
        }
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(e, "save session")


@app.delete("/session/current")
async def discard_session():
    discarded = manager.discard()
    return {"success": True, "discarded": discarded}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
