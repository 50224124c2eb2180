# Citizen Services Dashboard - grievances & appointments for government bodies
# FastAPI + MongoDB

import os
import re
import uuid
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any
from enum import Enum
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from starlette.requests import Request
from pydantic import BaseModel, Field, field_validator
from pymongo import MongoClient, ReturnDocument
from jose import JWTError, jwt
from passlib.context import CryptContext
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from tracking.errors import (ConcurrentModification, EntityNotFound, IdSpaceExhausted,
                             InvalidAction, InvalidTransition, StorageUnavailable)
from tracking.ids import SequenceAllocator
from tracking.notifications import Notifier
from tracking.otp import OtpVerifier
from tracking.store import run_blocking
from tracking.timeline import describe_event, get_ordered_timeline
from tracking.workflow import (AppointmentStatus, EntityWorkflow, GrievanceStatus,
                               allowed_transitions, is_terminal)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from dotenv import load_dotenv
# Try multiple .env locations: next to this file, one level up, then cwd
_script_dir = Path(__file__).resolve().parent
_env_candidates = [
    _script_dir / ".env",            # backend/.env
    _script_dir.parent / ".env",     # repo root
    Path.cwd() / ".env",
]
for _env_path in _env_candidates:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "citizen_services")
JWT_SECRET = os.getenv("JWT_SECRET", "")
if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "8"))
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

GRIEVANCE_ID_RE = re.compile(r"^GRV\d{8}$")
APPOINTMENT_ID_RE = re.compile(r"^APT\d{8}$")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    COMPANY_ADMIN = "company_admin"
    DEPARTMENT_ADMIN = "department_admin"
    OPERATOR = "operator"

class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

class Language(str, Enum):
    ENGLISH = "en"
    HINDI = "hi"
    MARATHI = "mr"

ADMIN_ROLES = (UserRole.SUPERADMIN.value, UserRole.COMPANY_ADMIN.value)

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)

class UserLogin(BaseModel):
    username: str
    password: str

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    phone: Optional[str] = Field(None, max_length=20)
    role: UserRole = UserRole.OPERATOR
    company_id: Optional[str] = None
    department_id: Optional[str] = None

class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=20)
    role: Optional[UserRole] = None
    department_id: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(None, min_length=6, max_length=72)

class UserResponse(BaseModel):
    id: str
    username: str
    full_name: str
    email: str
    phone: Optional[str] = None
    role: UserRole
    company_id: Optional[str] = None
    department_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class WhatsAppConfig(BaseModel):
    phone_number_id: str = Field(..., max_length=64)
    business_account_id: Optional[str] = Field(None, max_length=64)

class CompanyCreate(BaseModel):
    name: str = Field(..., max_length=200)
    code: str = Field(..., min_length=2, max_length=20)
    contact_email: Optional[str] = Field(None, max_length=320)
    contact_phone: Optional[str] = Field(None, max_length=20)
    whatsapp_config: Optional[WhatsAppConfig] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, v):
        if not re.match(r"^[A-Za-z0-9_-]+$", v):
            raise ValueError("code may contain letters, digits, '-' and '_' only")
        return v.upper()

class CompanyResponse(BaseModel):
    id: str
    name: str
    code: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    whatsapp_config: Optional[WhatsAppConfig] = None
    created_at: datetime

class DepartmentCreate(BaseModel):
    name: str = Field(..., max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    company_id: Optional[str] = None
    contact_person: Optional[str] = Field(None, max_length=200)
    contact_email: Optional[str] = Field(None, max_length=320)
    contact_phone: Optional[str] = Field(None, max_length=20)

    @field_validator("contact_phone")
    @classmethod
    def ten_digit_phone(cls, v):
        if v is None:
            return v
        digits = re.sub(r"\D", "", v)
        if len(digits) != 10:
            raise ValueError("contact_phone must have exactly 10 digits")
        return digits

class DepartmentUpdate(DepartmentCreate):
    name: Optional[str] = Field(None, max_length=200)

class DepartmentResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    company_id: str
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

class GrievanceCreate(BaseModel):
    citizen_name: str = Field(..., max_length=200)
    citizen_phone: str = Field(..., max_length=20)
    citizen_whatsapp: Optional[str] = Field(None, max_length=20)
    description: str = Field(..., max_length=5000)
    category: Optional[str] = Field(None, max_length=100)
    priority: Priority = Priority.MEDIUM
    language: Language = Language.ENGLISH
    department_id: Optional[str] = None
    company_id: Optional[str] = None
    location: Optional[Location] = None

class AppointmentCreate(BaseModel):
    citizen_name: str = Field(..., max_length=200)
    citizen_phone: str = Field(..., max_length=20)
    citizen_whatsapp: Optional[str] = Field(None, max_length=20)
    purpose: str = Field(..., max_length=2000)
    language: Language = Language.ENGLISH
    department_id: Optional[str] = None
    company_id: Optional[str] = None
    appointment_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    appointment_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")

class StatusUpdate(BaseModel):
    status: str
    remarks: Optional[str] = Field(None, max_length=2000)
    expected_version: Optional[int] = Field(None, ge=0)
    resolution: Optional[str] = Field(None, max_length=10000)
    appointment_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    appointment_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")

class AssignmentRequest(BaseModel):
    user_id: str
    expected_version: Optional[int] = Field(None, ge=0)

class TransferRequest(BaseModel):
    department_id: str
    reason: Optional[str] = Field(None, max_length=2000)
    expected_version: Optional[int] = Field(None, ge=0)

class TimelineEventResponse(BaseModel):
    action: str
    timestamp: datetime
    performed_by: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    description: str

class GrievanceResponse(BaseModel):
    id: str
    grievance_id: str
    company_id: str
    department_id: Optional[str] = None
    citizen_name: str
    citizen_phone: str
    citizen_whatsapp: Optional[str] = None
    description: str
    category: Optional[str] = None
    priority: Priority
    language: Language
    location: Optional[Dict[str, Any]] = None
    status: GrievanceStatus
    allowed_transitions: List[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    sla_due_date: Optional[datetime] = None
    sla_breached: bool = False
    citizen_verified: bool = False
    version: int
    timeline: List[TimelineEventResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

class AppointmentResponse(BaseModel):
    id: str
    appointment_id: str
    company_id: str
    department_id: Optional[str] = None
    citizen_name: str
    citizen_phone: str
    citizen_whatsapp: Optional[str] = None
    purpose: str
    language: Language
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    status: AppointmentStatus
    allowed_transitions: List[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    citizen_verified: bool = False
    version: int
    timeline: List[TimelineEventResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

class TrackResponse(BaseModel):
    reference_id: str
    status: str
    created_at: datetime
    updated_at: datetime
    history: List[Dict[str, Any]] = Field(default_factory=list)

class DashboardResponse(BaseModel):
    total_grievances: int
    total_appointments: int
    grievance_status: Dict[str, int]
    appointment_status: Dict[str, int]
    open_grievances: int
    sla_breached_count: int

class DepartmentBreakdown(BaseModel):
    department_id: Optional[str] = None
    department_name: Optional[str] = None
    count: int
    pending: int
    resolved: int

class StatusCount(BaseModel):
    status: str
    count: int

class DailyCount(BaseModel):
    date: str
    count: int

class AppointmentDay(DailyCount):
    confirmed: int
    completed: int

class OtpSendRequest(BaseModel):
    phone: str = Field(..., max_length=20)
    company_id: Optional[str] = None
    language: Language = Language.ENGLISH

class OtpVerifyRequest(BaseModel):
    phone: str = Field(..., max_length=20)
    code: str = Field(..., pattern=r"^\d{6}$")

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="Citizen Services Dashboard")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
from starlette.middleware.base import BaseHTTPMiddleware

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

app.add_middleware(SecurityHeadersMiddleware)
db_client = None
db = None

# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, headers={"Retry-After": "1"},
                        content={"detail": "Storage temporarily unavailable, please retry"})

@app.exception_handler(ConcurrentModification)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModification):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(InvalidAction)
async def invalid_action_handler(request: Request, exc: InvalidAction):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(EntityNotFound)
async def not_found_handler(request: Request, exc: EntityNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(IdSpaceExhausted)
async def id_space_handler(request: Request, exc: IdSpaceExhausted):
    logger.critical("ID space exhausted: %s", exc)
    return JSONResponse(status_code=507, content={"detail": str(exc)})

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db()
    yield
    if db_client:
        db_client.close()

app.router.lifespan_context = lifespan

def _create_indexes(database):
    database.grievances.create_index("grievance_id", unique=True)
    database.grievances.create_index([("company_id", 1), ("status", 1), ("is_deleted", 1)])
    database.grievances.create_index([("assigned_to", 1), ("status", 1)])
    database.grievances.create_index("created_at")
    database.appointments.create_index("appointment_id", unique=True)
    database.appointments.create_index([("company_id", 1), ("status", 1), ("is_deleted", 1)])
    database.users.create_index([("username", 1)], unique=True)
    database.companies.create_index([("code", 1)], unique=True)
    database.departments.create_index("company_id")
    database.notification_outbox.create_index([("status", 1), ("created_at", 1)])
    database.otp_codes.create_index("expires_at", expireAfterSeconds=0)
    database.otp_codes.create_index([("phone", 1), ("verified", 1)])

async def startup_db():
    global db_client, db
    db_client = MongoClient(MONGODB_URL)
    db = db_client[MONGODB_DB]
    await run_blocking(_create_indexes, db, timeout=STORE_TIMEOUT_SECONDS)
    counters = await run_blocking(SequenceAllocator(db).initialize_counters,
                                  timeout=STORE_TIMEOUT_SECONDS)
    logger.info("Database initialized (%s), counters: %s", MONGODB_DB, counters)

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_db():
    return db

def _workflow(kind: str, database) -> EntityWorkflow:
    return EntityWorkflow(kind, database, SequenceAllocator(database), Notifier(database))

async def get_grievances(db=Depends(get_db)) -> EntityWorkflow:
    return _workflow("grievance", db)

async def get_appointments(db=Depends(get_db)) -> EntityWorkflow:
    return _workflow("appointment", db)

async def get_otp(db=Depends(get_db)) -> OtpVerifier:
    return OtpVerifier(db, Notifier(db))

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = await run_blocking(db.users.find_one, {"username": username, "is_deleted": {"$ne": True}},
                              timeout=STORE_TIMEOUT_SECONDS)
    if user is None or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user

def require_role(*roles):
    async def role_checker(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return role_checker

def user_to_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]), username=user["username"], full_name=user["full_name"],
        email=user["email"], phone=user.get("phone"), role=user["role"],
        company_id=user.get("company_id"), department_id=user.get("department_id"),
        is_active=user.get("is_active", True), created_at=user["created_at"])

def company_scope(user: dict, requested: Optional[str] = None) -> Optional[str]:
    """Company a request acts on: the caller's own, or any for a superadmin."""
    if user["role"] == UserRole.SUPERADMIN.value:
        return requested
    if requested and requested != user.get("company_id"):
        raise HTTPException(status_code=403, detail="Access to another company denied")
    return user.get("company_id")

def check_company_access(user: dict, doc: dict):
    if user["role"] != UserRole.SUPERADMIN.value and doc.get("company_id") != user.get("company_id"):
        raise HTTPException(status_code=403, detail="Access denied")

def analytics_scope(user: dict, company_id: Optional[str] = None,
                    department_id: Optional[str] = None) -> Dict[str, Any]:
    """Company scope as usual; department admins only ever see their own department."""
    scope = {"company_id": company_scope(user, company_id),
             "department_id": sanitize_str(department_id) if department_id else None}
    if user["role"] == UserRole.DEPARTMENT_ADMIN.value:
        if department_id and department_id != user.get("department_id"):
            raise HTTPException(status_code=403, detail="Access to another department denied")
        scope["department_id"] = user.get("department_id")
    return scope

# ---------------------------------------------------------------------------
# Utility Helpers
# ---------------------------------------------------------------------------
SLA_HOURS = {Priority.URGENT: 24, Priority.HIGH: 72, Priority.MEDIUM: 168, Priority.LOW: 360}

def calculate_sla_deadline(priority: Priority) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=SLA_HOURS.get(priority, 168))

def timeline_to_response(doc: dict) -> List[TimelineEventResponse]:
    return [TimelineEventResponse(
        action=e.action, timestamp=e.timestamp, performed_by=e.performed_by,
        details=e.details if isinstance(e.details, dict) else e.details.model_dump(exclude_none=True),
        description=describe_event(e)) for e in get_ordered_timeline(doc)]

def _sla_breached(g: dict) -> bool:
    due = g.get("sla_due_date")
    if not due or is_terminal("grievance", g["status"]) or g["status"] == GrievanceStatus.RESOLVED:
        return False
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due < datetime.now(timezone.utc)

def grievance_to_response(g: dict) -> GrievanceResponse:
    return GrievanceResponse(
        **{k: v for k, v in g.items() if k not in ("_id", "timeline", "sla_breached")},
        id=g["_id"], sla_breached=g.get("sla_breached") or _sla_breached(g),
        allowed_transitions=sorted(allowed_transitions("grievance", g["status"])),
        timeline=timeline_to_response(g))

def appointment_to_response(a: dict) -> AppointmentResponse:
    return AppointmentResponse(
        **{k: v for k, v in a.items() if k not in ("_id", "timeline")},
        id=a["_id"],
        allowed_transitions=sorted(allowed_transitions("appointment", a["status"])),
        timeline=timeline_to_response(a))

def sanitize_str(value: str) -> str:
    """Ensure a value is a plain string, not a dict/list that could be a NoSQL operator."""
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail="Invalid parameter type")
    return str(value)

async def _resolve_department(db, company_id: str, department_id: Optional[str]) -> Optional[str]:
    if department_id is None:
        return None
    department_id = sanitize_str(department_id)
    dept = await run_blocking(db.departments.find_one,
                              {"_id": department_id, "company_id": company_id, "is_deleted": {"$ne": True}},
                              timeout=STORE_TIMEOUT_SECONDS)
    if not dept:
        raise HTTPException(status_code=400, detail="Unknown department for this company")
    return department_id

async def _resolve_assignee(db, company_id: str, user_id: str) -> dict:
    user_id = sanitize_str(user_id)
    target = await run_blocking(db.users.find_one,
                                {"_id": user_id, "is_active": True, "is_deleted": {"$ne": True}},
                                timeout=STORE_TIMEOUT_SECONDS)
    if not target or target.get("company_id") != company_id:
        raise HTTPException(status_code=400, detail="Assignee must be an active user of the same company")
    return target

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: UserLogin, db=Depends(get_db)):
    user = await run_blocking(db.users.find_one, {"username": form.username, "is_deleted": {"$ne": True}},
                              timeout=STORE_TIMEOUT_SECONDS)
    if not user or not user.get("is_active", True) or not verify_password(form.password, user["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": user["username"], "role": user["role"]})
    return TokenResponse(access_token=token, user=user_to_response(user))

@app.get("/auth/me", response_model=UserResponse)
async def get_me(user=Depends(get_current_user)):
    return user_to_response(user)

# ---------------------------------------------------------------------------
# COMPANY / DEPARTMENT / USER ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/companies", response_model=CompanyResponse)
async def create_company(data: CompanyCreate,
                         user=Depends(require_role(UserRole.SUPERADMIN.value)),
                         db=Depends(get_db)):
    existing = await run_blocking(db.companies.find_one, {"code": data.code}, timeout=STORE_TIMEOUT_SECONDS)
    if existing:
        raise HTTPException(status_code=400, detail="Company code already exists")
    doc = {"_id": str(uuid.uuid4()), **data.model_dump(), "is_deleted": False,
           "created_at": datetime.now(timezone.utc)}
    await run_blocking(db.companies.insert_one, doc, timeout=STORE_TIMEOUT_SECONDS)
    logger.info("Superadmin %s created company %s (%s)", user["username"], data.name, data.code)
    return CompanyResponse(**doc, id=doc["_id"])

@app.get("/companies", response_model=List[CompanyResponse])
async def list_companies(user=Depends(require_role(UserRole.SUPERADMIN.value)), db=Depends(get_db)):
    companies = await run_blocking(
        lambda: list(db.companies.find({"is_deleted": {"$ne": True}}).sort("created_at", -1)),
        timeout=STORE_TIMEOUT_SECONDS)
    return [CompanyResponse(**c, id=c["_id"]) for c in companies]

@app.post("/departments", response_model=DepartmentResponse)
async def create_department(data: DepartmentCreate,
                            user=Depends(require_role(*ADMIN_ROLES)),
                            db=Depends(get_db)):
    company_id = company_scope(user, data.company_id)
    if not company_id:
        raise HTTPException(status_code=400, detail="company_id is required")
    doc = {"_id": str(uuid.uuid4()), **data.model_dump(exclude={"company_id"}),
           "company_id": company_id, "is_deleted": False, "created_at": datetime.now(timezone.utc)}
    await run_blocking(db.departments.insert_one, doc, timeout=STORE_TIMEOUT_SECONDS)
    logger.info("%s created department %s in company %s", user["username"], data.name, company_id)
    return DepartmentResponse(**doc, id=doc["_id"])

@app.get("/departments", response_model=List[DepartmentResponse])
async def list_departments(company_id: Optional[str] = None,
                           user=Depends(get_current_user), db=Depends(get_db)):
    query: Dict[str, Any] = {"is_deleted": {"$ne": True}}
    scope = company_scope(user, company_id)
    if scope:
        query["company_id"] = scope
    depts = await run_blocking(lambda: list(db.departments.find(query).sort("name", 1)),
                               timeout=STORE_TIMEOUT_SECONDS)
    return [DepartmentResponse(**d, id=d["_id"]) for d in depts]

async def _load_department(db, dept_id: str, user: dict) -> dict:
    dept = await run_blocking(db.departments.find_one,
                              {"_id": sanitize_str(dept_id), "is_deleted": {"$ne": True}},
                              timeout=STORE_TIMEOUT_SECONDS)
    if not dept:
        raise HTTPException(status_code=404, detail="Department not found")
    check_company_access(user, dept)
    return dept

@app.get("/departments/{dept_id}", response_model=DepartmentResponse)
async def get_department(dept_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    dept = await _load_department(db, dept_id, user)
    return DepartmentResponse(**dept, id=dept["_id"])

@app.put("/departments/{dept_id}", response_model=DepartmentResponse)
async def update_department(dept_id: str, data: DepartmentUpdate,
                            user=Depends(require_role(*ADMIN_ROLES)),
                            db=Depends(get_db)):
    dept = await _load_department(db, dept_id, user)
    changes = data.model_dump(exclude_unset=True, exclude={"company_id"})
    if changes.get("name") is None:
        changes.pop("name", None)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = datetime.now(timezone.utc)
    updated = await run_blocking(db.departments.find_one_and_update,
                                 {"_id": dept["_id"], "is_deleted": {"$ne": True}}, {"$set": changes},
                                 return_document=ReturnDocument.AFTER, timeout=STORE_TIMEOUT_SECONDS)
    if updated is None:
        raise HTTPException(status_code=404, detail="Department not found")
    logger.info("%s updated department %s (%s)", user["username"], dept["name"],
                ", ".join(sorted(k for k in changes if k != "updated_at")))
    return DepartmentResponse(**updated, id=updated["_id"])

@app.delete("/departments/{dept_id}")
async def delete_department(dept_id: str, user=Depends(require_role(*ADMIN_ROLES)),
                            db=Depends(get_db)):
    dept = await _load_department(db, dept_id, user)
    now = datetime.now(timezone.utc)
    await run_blocking(db.departments.update_one, {"_id": dept["_id"]},
                       {"$set": {"is_deleted": True, "deleted_at": now, "deleted_by": str(user["_id"]),
                                 "updated_at": now}},
                       timeout=STORE_TIMEOUT_SECONDS)
    logger.info("%s deleted department %s", user["username"], dept["name"])
    return {"detail": f"Department {dept['name']} deleted"}

@app.post("/users", response_model=UserResponse)
async def create_user(data: UserCreate,
                      user=Depends(require_role(*ADMIN_ROLES)),
                      db=Depends(get_db)):
    if data.role == UserRole.SUPERADMIN and user["role"] != UserRole.SUPERADMIN.value:
        raise HTTPException(status_code=403, detail="Only a superadmin can create superadmins")
    company_id = company_scope(user, data.company_id)
    if data.role != UserRole.SUPERADMIN and not company_id:
        raise HTTPException(status_code=400, detail="company_id is required")
    department_id = await _resolve_department(db, company_id, data.department_id) if company_id else None
    existing = await run_blocking(db.users.find_one, {"username": data.username}, timeout=STORE_TIMEOUT_SECONDS)
    if existing:
        raise HTTPException(status_code=400, detail="Username already exists")
    user_doc = {
        "_id": str(uuid.uuid4()), "username": data.username,
        "hashed_password": hash_password(data.password),
        "full_name": data.full_name, "email": data.email, "phone": data.phone,
        "role": data.role.value,
        "company_id": None if data.role == UserRole.SUPERADMIN else company_id,
        "department_id": department_id,
        "is_active": True, "is_deleted": False,
        "created_at": datetime.now(timezone.utc),
    }
    await run_blocking(db.users.insert_one, user_doc, timeout=STORE_TIMEOUT_SECONDS)
    logger.info("%s created user %s (%s)", user["username"], data.username, data.role.value)
    return user_to_response(user_doc)

@app.get("/users", response_model=List[UserResponse])
async def list_users(role: Optional[UserRole] = None, department_id: Optional[str] = None,
                     user=Depends(require_role(*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)),
                     db=Depends(get_db)):
    query: Dict[str, Any] = {"is_deleted": {"$ne": True}}
    scope = company_scope(user)
    if scope:
        query["company_id"] = scope
    if role:
        query["role"] = role.value
    if department_id:
        query["department_id"] = sanitize_str(department_id)
    users = await run_blocking(lambda: list(db.users.find(query).sort("created_at", -1)),
                               timeout=STORE_TIMEOUT_SECONDS)
    return [user_to_response(u) for u in users]

async def _load_user(db, user_id: str, actor: dict) -> dict:
    target = await run_blocking(db.users.find_one,
                                {"_id": sanitize_str(user_id), "is_deleted": {"$ne": True}},
                                timeout=STORE_TIMEOUT_SECONDS)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if actor["role"] != UserRole.SUPERADMIN.value and (
            target.get("company_id") != actor.get("company_id")
            or target["role"] == UserRole.SUPERADMIN.value):
        raise HTTPException(status_code=403, detail="Access denied")
    return target

@app.put("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: str, data: UserUpdate,
                      user=Depends(require_role(*ADMIN_ROLES)),
                      db=Depends(get_db)):
    target = await _load_user(db, user_id, user)
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items()
               if v is not None or k in ("phone", "department_id")}
    if "role" in changes:
        if data.role == UserRole.SUPERADMIN and user["role"] != UserRole.SUPERADMIN.value:
            raise HTTPException(status_code=403, detail="Only a superadmin can grant superadmin")
        changes["role"] = data.role.value
    if target["_id"] == user["_id"] and (changes.get("is_active") is False
                                         or changes.get("role", user["role"]) != user["role"]):
        raise HTTPException(status_code=400, detail="You cannot deactivate or demote yourself")
    if "department_id" in changes:
        changes["department_id"] = (await _resolve_department(db, target["company_id"], data.department_id)
                                    if target.get("company_id") else None)
    if "password" in changes:
        changes["hashed_password"] = hash_password(changes.pop("password"))
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = datetime.now(timezone.utc)
    updated = await run_blocking(db.users.find_one_and_update, {"_id": target["_id"]}, {"$set": changes},
                                 return_document=ReturnDocument.AFTER, timeout=STORE_TIMEOUT_SECONDS)
    logger.info("%s updated user %s (%s)", user["username"], target["username"],
                ", ".join(sorted(k for k in changes if k != "updated_at")))
    return user_to_response(updated)

@app.delete("/users/{user_id}")
async def delete_user(user_id: str, user=Depends(require_role(*ADMIN_ROLES)), db=Depends(get_db)):
    target = await _load_user(db, user_id, user)
    if target["_id"] == user["_id"]:
        raise HTTPException(status_code=400, detail="You cannot delete yourself")
    now = datetime.now(timezone.utc)
    await run_blocking(db.users.update_one, {"_id": target["_id"]},
                       {"$set": {"is_active": False, "is_deleted": True, "deleted_at": now,
                                 "deleted_by": str(user["_id"]), "updated_at": now}},
                       timeout=STORE_TIMEOUT_SECONDS)
    logger.info("%s deleted user %s", user["username"], target["username"])
    return {"detail": f"User {target['username']} deleted"}

# ---------------------------------------------------------------------------
# GRIEVANCE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/grievances", response_model=GrievanceResponse)
async def create_grievance(data: GrievanceCreate, user=Depends(get_current_user),
                           db=Depends(get_db), grievances=Depends(get_grievances),
                           otp=Depends(get_otp)):
    company_id = company_scope(user, data.company_id)
    if not company_id:
        raise HTTPException(status_code=400, detail="company_id is required")
    department_id = await _resolve_department(db, company_id, data.department_id)
    verified = await run_blocking(otp.is_verified, data.citizen_phone, timeout=STORE_TIMEOUT_SECONDS)
    fields = {
        "company_id": company_id, "department_id": department_id,
        "citizen_name": data.citizen_name, "citizen_phone": data.citizen_phone,
        "citizen_whatsapp": data.citizen_whatsapp or data.citizen_phone,
        "description": data.description, "category": data.category,
        "priority": data.priority.value, "language": data.language.value,
        "location": {"type": "Point", "coordinates": [data.location.longitude, data.location.latitude],
                     "address": data.location.address} if data.location else None,
        "resolution": None, "resolved_at": None, "closed_at": None,
        "sla_due_date": calculate_sla_deadline(data.priority), "sla_breached": False,
        "citizen_verified": verified,
    }
    doc = await run_blocking(grievances.create, fields, str(user["_id"]), timeout=STORE_TIMEOUT_SECONDS)
    return grievance_to_response(doc)

@app.get("/grievances", response_model=List[GrievanceResponse])
async def list_grievances(
    status: Optional[GrievanceStatus] = None, department_id: Optional[str] = None,
    assigned_to: Optional[str] = None, company_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100), skip: int = Query(0, ge=0, le=10000),
    user=Depends(get_current_user), grievances=Depends(get_grievances)):
    fq = {
        "company_id": company_scope(user, company_id),
        "status": status.value if status else None,
        "department_id": sanitize_str(department_id) if department_id else None,
        "assigned_to": sanitize_str(assigned_to) if assigned_to else None,
    }
    if user["role"] == UserRole.OPERATOR.value:
        fq["assigned_to"] = str(user["_id"])
    docs = await run_blocking(grievances.find_many, fq, skip, limit, timeout=STORE_TIMEOUT_SECONDS)
    return [grievance_to_response(g) for g in docs]

@app.get("/grievances/track/{grievance_id}", response_model=TrackResponse)
@limiter.limit("10/minute")
async def track_grievance(request: Request, grievance_id: str, grievances=Depends(get_grievances)):
    grievance_id = sanitize_str(grievance_id)
    if not GRIEVANCE_ID_RE.match(grievance_id):
        raise HTTPException(status_code=400, detail="Invalid grievance ID format")
    g = await run_blocking(grievances.get, grievance_id, timeout=STORE_TIMEOUT_SECONDS)
    return _track_response(g, "grievance_id")

@app.get("/grievances/{ref}", response_model=GrievanceResponse)
async def get_grievance(ref: str, user=Depends(get_current_user), grievances=Depends(get_grievances)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    return grievance_to_response(g)

@app.get("/grievances/{ref}/timeline", response_model=List[TimelineEventResponse])
async def get_grievance_timeline(ref: str, user=Depends(get_current_user),
                                 grievances=Depends(get_grievances)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    return timeline_to_response(g)

@app.put("/grievances/{ref}/status", response_model=GrievanceResponse)
async def update_grievance_status(ref: str, update: StatusUpdate, user=Depends(get_current_user),
                                  grievances=Depends(get_grievances)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    updated = await run_blocking(
        grievances.update_status, g["_id"], update.status, str(user["_id"]), update.remarks,
        update.expected_version, {"resolution": update.resolution},
        timeout=STORE_TIMEOUT_SECONDS)
    return grievance_to_response(updated)

@app.put("/grievances/{ref}/assign", response_model=GrievanceResponse)
async def assign_grievance(ref: str, assignment: AssignmentRequest,
                           user=Depends(require_role(*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)),
                           db=Depends(get_db), grievances=Depends(get_grievances),
                           otp=Depends(get_otp)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    target = await _resolve_assignee(db, g["company_id"], assignment.user_id)
    updated = await run_blocking(
        grievances.assign, g["_id"], target["_id"], target["full_name"], str(user["_id"]),
        assignment.expected_version, target.get("department_id"),
        timeout=STORE_TIMEOUT_SECONDS)
    return grievance_to_response(updated)

@app.put("/grievances/{ref}/transfer", response_model=GrievanceResponse)
async def transfer_grievance(ref: str, transfer: TransferRequest,
                             user=Depends(require_role(*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)),
                             db=Depends(get_db), grievances=Depends(get_grievances)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    department_id = await _resolve_department(db, g["company_id"], transfer.department_id)
    updated = await run_blocking(
        grievances.transfer_department, g["_id"], department_id, str(user["_id"]),
        transfer.reason, transfer.expected_version, timeout=STORE_TIMEOUT_SECONDS)
    return grievance_to_response(updated)

@app.delete("/grievances/{ref}")
async def delete_grievance(ref: str, user=Depends(require_role(*ADMIN_ROLES)),
                           grievances=Depends(get_grievances)):
    g = await run_blocking(grievances.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, g)
    await run_blocking(grievances.soft_delete, g["_id"], str(user["_id"]), timeout=STORE_TIMEOUT_SECONDS)
    return {"detail": f"Grievance {g['grievance_id']} deleted"}

# ---------------------------------------------------------------------------
# APPOINTMENT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/appointments", response_model=AppointmentResponse)
async def create_appointment(data: AppointmentCreate, user=Depends(get_current_user),
                             db=Depends(get_db), appointments=Depends(get_appointments),
                             otp=Depends(get_otp)):
    company_id = company_scope(user, data.company_id)
    if not company_id:
        raise HTTPException(status_code=400, detail="company_id is required")
    department_id = await _resolve_department(db, company_id, data.department_id)
    verified = await run_blocking(otp.is_verified, data.citizen_phone, timeout=STORE_TIMEOUT_SECONDS)
    fields = {
        "company_id": company_id, "department_id": department_id,
        "citizen_name": data.citizen_name, "citizen_phone": data.citizen_phone,
        "citizen_whatsapp": data.citizen_whatsapp or data.citizen_phone,
        "purpose": data.purpose, "language": data.language.value,
        "appointment_date": data.appointment_date, "appointment_time": data.appointment_time,
        "completed_at": None,
        "citizen_verified": verified,
    }
    doc = await run_blocking(appointments.create, fields, str(user["_id"]), timeout=STORE_TIMEOUT_SECONDS)
    return appointment_to_response(doc)

@app.get("/appointments", response_model=List[AppointmentResponse])
async def list_appointments(
    status: Optional[AppointmentStatus] = None, department_id: Optional[str] = None,
    assigned_to: Optional[str] = None, company_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100), skip: int = Query(0, ge=0, le=10000),
    user=Depends(get_current_user), appointments=Depends(get_appointments)):
    fq = {
        "company_id": company_scope(user, company_id),
        "status": status.value if status else None,
        "department_id": sanitize_str(department_id) if department_id else None,
        "assigned_to": sanitize_str(assigned_to) if assigned_to else None,
    }
    if user["role"] == UserRole.OPERATOR.value:
        fq["assigned_to"] = str(user["_id"])
    docs = await run_blocking(appointments.find_many, fq, skip, limit, timeout=STORE_TIMEOUT_SECONDS)
    return [appointment_to_response(a) for a in docs]

@app.get("/appointments/track/{appointment_id}", response_model=TrackResponse)
@limiter.limit("10/minute")
async def track_appointment(request: Request, appointment_id: str,
                            appointments=Depends(get_appointments)):
    appointment_id = sanitize_str(appointment_id)
    if not APPOINTMENT_ID_RE.match(appointment_id):
        raise HTTPException(status_code=400, detail="Invalid appointment ID format")
    a = await run_blocking(appointments.get, appointment_id, timeout=STORE_TIMEOUT_SECONDS)
    return _track_response(a, "appointment_id")

@app.get("/appointments/{ref}", response_model=AppointmentResponse)
async def get_appointment(ref: str, user=Depends(get_current_user),
                          appointments=Depends(get_appointments)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    return appointment_to_response(a)

@app.get("/appointments/{ref}/timeline", response_model=List[TimelineEventResponse])
async def get_appointment_timeline(ref: str, user=Depends(get_current_user),
                                   appointments=Depends(get_appointments)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    return timeline_to_response(a)

@app.put("/appointments/{ref}/status", response_model=AppointmentResponse)
async def update_appointment_status(ref: str, update: StatusUpdate, user=Depends(get_current_user),
                                    appointments=Depends(get_appointments)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    if (update.status == AppointmentStatus.CONFIRMED
            and not ((update.appointment_date and update.appointment_time)
                     or (a.get("appointment_date") and a.get("appointment_time")))):
        raise HTTPException(status_code=400, detail="Confirming requires an appointment date and time")
    updated = await run_blocking(
        appointments.update_status, a["_id"], update.status, str(user["_id"]), update.remarks,
        update.expected_version,
        {"appointment_date": update.appointment_date, "appointment_time": update.appointment_time},
        timeout=STORE_TIMEOUT_SECONDS)
    return appointment_to_response(updated)

@app.put("/appointments/{ref}/assign", response_model=AppointmentResponse)
async def assign_appointment(ref: str, assignment: AssignmentRequest,
                             user=Depends(require_role(*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)),
                             db=Depends(get_db), appointments=Depends(get_appointments),
                             otp=Depends(get_otp)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    target = await _resolve_assignee(db, a["company_id"], assignment.user_id)
    updated = await run_blocking(
        appointments.assign, a["_id"], target["_id"], target["full_name"], str(user["_id"]),
        assignment.expected_version, target.get("department_id"),
        timeout=STORE_TIMEOUT_SECONDS)
    return appointment_to_response(updated)

@app.put("/appointments/{ref}/transfer", response_model=AppointmentResponse)
async def transfer_appointment(ref: str, transfer: TransferRequest,
                               user=Depends(require_role(*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)),
                               db=Depends(get_db), appointments=Depends(get_appointments)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    department_id = await _resolve_department(db, a["company_id"], transfer.department_id)
    updated = await run_blocking(
        appointments.transfer_department, a["_id"], department_id, str(user["_id"]),
        transfer.reason, transfer.expected_version, timeout=STORE_TIMEOUT_SECONDS)
    return appointment_to_response(updated)

@app.delete("/appointments/{ref}")
async def delete_appointment(ref: str, user=Depends(require_role(*ADMIN_ROLES)),
                             appointments=Depends(get_appointments)):
    a = await run_blocking(appointments.get, sanitize_str(ref), timeout=STORE_TIMEOUT_SECONDS)
    check_company_access(user, a)
    await run_blocking(appointments.soft_delete, a["_id"], str(user["_id"]), timeout=STORE_TIMEOUT_SECONDS)
    return {"detail": f"Appointment {a['appointment_id']} deleted"}

def _track_response(doc: dict, id_field: str) -> TrackResponse:
    # Citizen-facing: no staff identities, only what happened and when
    history = [{"action": e.action, "timestamp": e.timestamp, "description": describe_event(e)}
               for e in get_ordered_timeline(doc) if e.action != "ASSIGNED"]
    return TrackResponse(reference_id=doc[id_field], status=doc["status"],
                         created_at=doc["created_at"], updated_at=doc["updated_at"],
                         history=history)

# ---------------------------------------------------------------------------
# ANALYTICS ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/analytics/dashboard", response_model=DashboardResponse)
async def get_dashboard(company_id: Optional[str] = None,
                        user=Depends(get_current_user), db=Depends(get_db),
                        grievances=Depends(get_grievances), appointments=Depends(get_appointments)):
    scope = {"company_id": company_scope(user, company_id)}
    def fetch():
        g_counts = grievances.status_counts(scope)
        a_counts = appointments.status_counts(scope)
        open_statuses = [GrievanceStatus.PENDING.value, GrievanceStatus.ASSIGNED.value,
                         GrievanceStatus.IN_PROGRESS.value]
        query = {k: v for k, v in scope.items() if v is not None}
        open_docs = db.grievances.find(
            {**query, "is_deleted": {"$ne": True}, "status": {"$in": open_statuses}},
            {"status": 1, "sla_due_date": 1})
        breached = sum(1 for g in open_docs if _sla_breached(g))
        return g_counts, a_counts, sum(g_counts[s] for s in open_statuses), breached
    g_counts, a_counts, open_count, breached = await run_blocking(fetch, timeout=STORE_TIMEOUT_SECONDS)
    return DashboardResponse(
        total_grievances=sum(g_counts.values()), total_appointments=sum(a_counts.values()),
        grievance_status=g_counts, appointment_status=a_counts,
        open_grievances=open_count, sla_breached_count=breached)

ANALYTICS_ROLES = (*ADMIN_ROLES, UserRole.DEPARTMENT_ADMIN.value)

@app.get("/analytics/grievances/by-department", response_model=List[DepartmentBreakdown])
async def grievances_by_department(company_id: Optional[str] = None,
                                   user=Depends(require_role(*ADMIN_ROLES)), db=Depends(get_db),
                                   grievances=Depends(get_grievances)):
    scope = {"company_id": company_scope(user, company_id)}
    def fetch():
        rows = grievances.breakdown(scope, "$department_id", {
            "pending": GrievanceStatus.PENDING.value, "resolved": GrievanceStatus.RESOLVED.value})
        ids = [r["_id"] for r in rows if r["_id"]]
        names = {d["_id"]: d["name"] for d in db.departments.find({"_id": {"$in": ids}}, {"name": 1})}
        return rows, names
    rows, names = await run_blocking(fetch, timeout=STORE_TIMEOUT_SECONDS)
    return [DepartmentBreakdown(department_id=r["_id"], department_name=names.get(r["_id"]),
                                count=r["count"], pending=r["pending"], resolved=r["resolved"])
            for r in rows]

@app.get("/analytics/grievances/by-status", response_model=List[StatusCount])
async def grievances_by_status(company_id: Optional[str] = None, department_id: Optional[str] = None,
                               user=Depends(require_role(*ANALYTICS_ROLES)),
                               grievances=Depends(get_grievances)):
    scope = analytics_scope(user, company_id, department_id)
    rows = await run_blocking(grievances.breakdown, scope, timeout=STORE_TIMEOUT_SECONDS)
    return [StatusCount(status=r["_id"], count=r["count"]) for r in rows]

@app.get("/analytics/grievances/trends", response_model=List[DailyCount])
async def grievance_trends(days: int = Query(30, ge=1, le=365), company_id: Optional[str] = None,
                           department_id: Optional[str] = None,
                           user=Depends(require_role(*ANALYTICS_ROLES)),
                           grievances=Depends(get_grievances)):
    since = datetime.now(timezone.utc) - timedelta(days=days)
    scope = {**analytics_scope(user, company_id, department_id), "created_at": {"$gte": since}}
    rows = await run_blocking(
        grievances.breakdown, scope,
        {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
        sort={"_id": 1}, timeout=STORE_TIMEOUT_SECONDS)
    return [DailyCount(date=r["_id"], count=r["count"]) for r in rows]

@app.get("/analytics/appointments/by-date", response_model=List[AppointmentDay])
async def appointments_by_date(days: int = Query(30, ge=1, le=365), company_id: Optional[str] = None,
                               department_id: Optional[str] = None,
                               user=Depends(require_role(*ANALYTICS_ROLES)),
                               appointments=Depends(get_appointments)):
    # appointment_date is stored as YYYY-MM-DD, so string order is date order
    since = (datetime.now(timezone.utc) - timedelta(days=days)).strftime("%Y-%m-%d")
    scope = {**analytics_scope(user, company_id, department_id), "appointment_date": {"$gte": since}}
    rows = await run_blocking(
        appointments.breakdown, scope, "$appointment_date",
        {"confirmed": AppointmentStatus.CONFIRMED.value, "completed": AppointmentStatus.COMPLETED.value},
        sort={"_id": 1}, timeout=STORE_TIMEOUT_SECONDS)
    return [AppointmentDay(date=r["_id"], count=r["count"], confirmed=r["confirmed"],
                           completed=r["completed"]) for r in rows]

# ---------------------------------------------------------------------------
# CITIZEN PHONE VERIFICATION
# ---------------------------------------------------------------------------
@app.post("/otp/send")
@limiter.limit("3/minute")
async def send_otp(request: Request, data: OtpSendRequest, db=Depends(get_db),
                   otp=Depends(get_otp)):
    if data.company_id:
        company = await run_blocking(db.companies.find_one,
                                     {"_id": sanitize_str(data.company_id), "is_deleted": {"$ne": True}},
                                     timeout=STORE_TIMEOUT_SECONDS)
        if not company:
            raise HTTPException(status_code=404, detail="Company not found")
    expires_at = await run_blocking(otp.send, data.phone, data.company_id, data.language.value,
                                    timeout=STORE_TIMEOUT_SECONDS)
    return {"detail": "Verification code sent", "expires_at": expires_at}

@app.post("/otp/verify")
@limiter.limit("10/minute")
async def verify_otp(request: Request, data: OtpVerifyRequest, otp=Depends(get_otp)):
    if not await run_blocking(otp.verify, data.phone, data.code, timeout=STORE_TIMEOUT_SECONDS):
        raise HTTPException(status_code=400, detail="Invalid or expired verification code")
    return {"detail": "Phone verified", "verified": True}

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "Citizen Services Dashboard",
            "timestamp": datetime.now(timezone.utc)}

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
