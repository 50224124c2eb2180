"""
Shared pytest fixtures for the Citizen Services Dashboard test suite.

Every test gets a fresh in-memory mongomock database, wired into the app
through ``app.dependency_overrides[get_db]``, plus tenants, staff users and
pre-authenticated headers for each role. No MongoDB server is needed.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import mongomock
import pytest
import pytest_asyncio

os.environ.setdefault("JWT_SECRET", "test-secret-for-the-dashboard-suite-0123456789")

# Ensure the backend modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dashboard import app, create_access_token, get_db, hash_password, limiter
from tracking.ids import SequenceAllocator
from tracking.notifications import Notifier
from tracking.workflow import EntityWorkflow

PASSWORD = "secret123"
_HASHED = hash_password(PASSWORD)


@pytest.fixture
def db():
    return mongomock.MongoClient()["citizen_services_test"]


@pytest.fixture
def allocator(db):
    return SequenceAllocator(db)


@pytest.fixture
def grievances(db, allocator):
    return EntityWorkflow("grievance", db, allocator, Notifier(db))


@pytest.fixture
def appointments(db, allocator):
    return EntityWorkflow("appointment", db, allocator, Notifier(db))


def _user(db, username, role, company_id=None, department_id=None):
    doc = {
        "_id": f"user-{username}", "username": username, "hashed_password": _HASHED,
        "full_name": username.replace("_", " ").title(), "email": f"{username}@example.gov.in",
        "phone": None, "role": role, "company_id": company_id, "department_id": department_id,
        "is_active": True, "is_deleted": False, "created_at": datetime.now(timezone.utc),
    }
    db.users.insert_one(doc)
    return doc


@pytest.fixture
def tenants(db):
    """Two companies: "a" with water/health departments and a full staff, "b" with an admin only."""
    for cid, code in (("company-a", "ZPA"), ("company-b", "ZPB")):
        db.companies.insert_one({"_id": cid, "name": f"Zilla Parishad {code}", "code": code,
                                 "is_deleted": False, "created_at": datetime.now(timezone.utc)})
    for did, name, cid in (("dept-water", "Water", "company-a"),
                           ("dept-health", "Health", "company-a"),
                           ("dept-b-works", "Works", "company-b")):
        db.departments.insert_one({"_id": did, "name": name, "company_id": cid,
                                   "is_deleted": False, "created_at": datetime.now(timezone.utc)})
    return {
        "superadmin": _user(db, "root", "superadmin"),
        "admin": _user(db, "admin_a", "company_admin", "company-a"),
        "head": _user(db, "head_water", "department_admin", "company-a", "dept-water"),
        "operator": _user(db, "op_water", "operator", "company-a", "dept-water"),
        "health_operator": _user(db, "op_health", "operator", "company-a", "dept-health"),
        "other_admin": _user(db, "admin_b", "company_admin", "company-b"),
    }


@pytest_asyncio.fixture
async def client(db):
    """In-process httpx AsyncClient bound to the per-test database."""
    # Disable rate limiting during tests so repeated logins aren't throttled
    limiter.enabled = False
    app.dependency_overrides[get_db] = lambda: db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def _headers(user: dict) -> dict:
    token = create_access_token({"sub": user["username"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def superadmin_headers(tenants):
    return _headers(tenants["superadmin"])


@pytest.fixture
def admin_headers(tenants):
    return _headers(tenants["admin"])


@pytest.fixture
def head_headers(tenants):
    return _headers(tenants["head"])


@pytest.fixture
def operator_headers(tenants):
    return _headers(tenants["operator"])


@pytest.fixture
def other_admin_headers(tenants):
    return _headers(tenants["other_admin"])
