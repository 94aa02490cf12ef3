import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import current_user_id
from config import get_settings
from database import ensure_indexes, get_db
from errors import BackendUnavailable, RewardsError
from impact import calculate_impact_score, get_environmental_stats
from leaderboard import (
    get_individual_leaderboard,
    get_residence_leaderboard,
    get_university_leaderboard,
)
from ledger import (
    create_user_account,
    get_user_profile,
    get_user_stats,
    get_user_transactions,
    update_user_profile,
)
from logging_config import RequestContextMiddleware, setup_logging
from recorder import get_recycling_history, record_event
from schemas import UserAccount
from vouchers import (
    generate_voucher,
    get_user_vouchers,
    get_voucher_categories,
    get_voucher_templates,
    redeem_voucher,
    seed_voucher_templates,
    verify_voucher_code,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    database = get_db()
    if database is not None:
        try:
            ensure_indexes(database)
        except PyMongoError:
            logger.warning("index_setup_failed", exc_info=True)
    yield


app = FastAPI(title="Student Recycling Rewards API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


# --------- Error handling ---------

@app.exception_handler(RewardsError)
async def rewards_error_handler(_request: Request, exc: RewardsError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def backend_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("backend_unavailable", path=request.url.path, method=request.method, error=str(exc))
    error = BackendUnavailable()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": "HTTPError", "message": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": "ValidationError",
            "message": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "InternalError", "message": "Internal server error"},
    )


# --------- Dependencies ---------

def require_db(database=Depends(get_db)):
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database


@app.get("/")
def read_root():
    return {"message": "Student Recycling Rewards API running"}


@app.get("/test")
def test_database(database=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    if database is None:
        return response

    response["database"] = "✅ Available"
    response["database_name"] = database.name
    try:
        response["collections"] = database.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


@app.post("/seed")
def seed_templates(database=Depends(require_db)):
    return seed_voucher_templates(database)


# --------- Users ---------

class RegisterRequest(BaseModel):
    email: Optional[EmailStr] = None
    first_name: str = ""
    last_name: str = ""
    student_id: Optional[str] = None
    university: Optional[str] = None
    residence_hall: Optional[str] = None


@app.post("/users")
def register_user(payload: RegisterRequest, user_id: str = Depends(current_user_id),
                  database=Depends(require_db)):
    profile = UserAccount(**payload.model_dump())
    user = create_user_account(database, user_id, profile)
    return {"ok": True, "id": user["_id"]}


class UpdateProfileRequest(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = Field(None, min_length=1)
    student_id: Optional[str] = None
    university: Optional[str] = None
    residence_hall: Optional[str] = None


@app.get("/users/me")
def my_profile(user_id: str = Depends(current_user_id), database=Depends(require_db)):
    return {"ok": True, "profile": get_user_profile(database, user_id)}


@app.patch("/users/me")
def update_my_profile(payload: UpdateProfileRequest, user_id: str = Depends(current_user_id),
                      database=Depends(require_db)):
    changes = payload.model_dump(exclude_unset=True)
    return {"ok": True, "profile": update_user_profile(database, user_id, changes)}


@app.get("/users/{user_id}")
def public_profile(user_id: str, database=Depends(require_db)):
    profile = get_user_profile(database, user_id)
    profile.pop("email", None)
    return {"ok": True, "profile": profile}


@app.get("/users/{user_id}/stats")
def user_stats(user_id: str, database=Depends(require_db)):
    return {"ok": True, "stats": get_user_stats(database, user_id)}


@app.get("/users/{user_id}/impact")
def user_impact(user_id: str, database=Depends(require_db)):
    return {"ok": True, "impact_score": calculate_impact_score(database, user_id)}


@app.get("/users/{user_id}/environment")
def user_environment(user_id: str, database=Depends(require_db)):
    return {"ok": True, "stats": get_environmental_stats(database, user_id)}


@app.get("/users/{user_id}/activities")
def user_activities(user_id: str, limit: int = 50, database=Depends(require_db)):
    return {"ok": True, "items": get_recycling_history(database, user_id, limit=limit)}


@app.get("/users/{user_id}/transactions")
def user_transactions(user_id: str, limit: int = 50, database=Depends(require_db)):
    return {"ok": True, "items": get_user_transactions(database, user_id, limit=limit)}


@app.get("/users/{user_id}/vouchers")
def user_vouchers(user_id: str, status: str = "all", database=Depends(require_db)):
    return {"ok": True, "items": get_user_vouchers(database, user_id, status_filter=status)}


# --------- Recycling ---------

class RecordActivityRequest(BaseModel):
    material: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=1000)
    location: Optional[str] = None
    barcode: Optional[str] = Field(None, description="Scanned code; repeats inside the dedupe window are rejected")


@app.post("/activities")
def record_activity(payload: RecordActivityRequest, user_id: str = Depends(current_user_id),
                    database=Depends(require_db)):
    return record_event(
        database,
        user_id,
        payload.material,
        quantity=payload.quantity,
        location=payload.location,
        dedupe_code=payload.barcode,
    )


# --------- Vouchers ---------

@app.get("/voucher-templates")
def list_voucher_templates(database=Depends(require_db)):
    return {"ok": True, "items": get_voucher_templates(database)}


@app.get("/voucher-categories")
def list_voucher_categories(database=Depends(require_db)):
    return {"ok": True, "items": get_voucher_categories(database)}


class GenerateVoucherRequest(BaseModel):
    template_id: str


@app.post("/vouchers")
def create_voucher(payload: GenerateVoucherRequest, user_id: str = Depends(current_user_id),
                   database=Depends(require_db)):
    return {"ok": True, "voucher": generate_voucher(database, user_id, payload.template_id)}


@app.post("/vouchers/{voucher_id}/redeem")
def redeem(voucher_id: str, vendor_id: str = Depends(current_user_id), database=Depends(require_db)):
    return {"ok": True, "voucher": redeem_voucher(database, voucher_id, vendor_id)}


@app.get("/vouchers/verify/{code}")
def verify(code: str, database=Depends(require_db)):
    return verify_voucher_code(database, code)


# --------- Leaderboards ---------

@app.get("/leaderboard/individual")
def individual_leaderboard(university: Optional[str] = None, limit: Optional[int] = None,
                           database=Depends(require_db)):
    limit = limit or get_settings().leaderboard_limit
    return {"ok": True, "items": get_individual_leaderboard(database, university=university, limit=limit)}


@app.get("/leaderboard/universities")
def university_leaderboard(database=Depends(require_db)):
    return {"ok": True, "items": get_university_leaderboard(database)}


@app.get("/leaderboard/residences")
def residence_leaderboard(university: Optional[str] = None, database=Depends(require_db)):
    return {"ok": True, "items": get_residence_leaderboard(database, university=university)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
