# Shared configuration, helpers, and constants for all seed modules

import os
import uuid
from pathlib import Path
from datetime import datetime, timezone
from passlib.context import CryptContext
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
_script_dir = Path(__file__).resolve().parent.parent          # backend/
for _env_path in [_script_dir / ".env", _script_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Connection settings
# ---------------------------------------------------------------------------
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "citizen_services")
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

# ---------------------------------------------------------------------------
# Shared clients
# ---------------------------------------------------------------------------
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# ---------------------------------------------------------------------------
# SLA hours by priority
# ---------------------------------------------------------------------------
PRIORITY_SLA_HOURS = {"LOW": 360, "MEDIUM": 168, "HIGH": 72, "URGENT": 24}

# ---------------------------------------------------------------------------
# Approximate district centre coordinates (lon, lat) for GeoJSON Points
# ---------------------------------------------------------------------------
DISTRICT_COORDS = {
    "Pune":       (73.86, 18.52),
    "Nashik":     (73.79, 20.00),
    "Nagpur":     (79.09, 21.15),
    "Puri":       (85.83, 19.81),
    "Khordha":    (85.83, 20.18),
    "Cuttack":    (85.88, 20.46),
}

def geojson_point(district: str) -> dict | None:
    """Return a GeoJSON Point for *district*, or None if unknown."""
    coords = DISTRICT_COORDS.get(district)
    if coords is None:
        return None
    return {"type": "Point", "coordinates": list(coords), "address": f"{district} district"}
