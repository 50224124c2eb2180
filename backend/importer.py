# Citizen Services Dashboard - Seed Data Importer
# Resets MongoDB and populates it with demo tenants, staff, grievances and appointments
#
# Usage:  python backend/importer.py      (from repo root)
#     or: python importer.py              (from backend/)

import sys
from pathlib import Path

from pymongo import MongoClient

# Ensure the backend modules are importable when running from repo root
_backend_dir = Path(__file__).resolve().parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

from seed.config import MONGODB_URL, MONGODB_DB
from seed.users import import_companies, import_users, USERS
from seed.grievances import import_grievances, import_appointments, GRIEVANCES, APPOINTMENTS
from tracking.ids import SequenceAllocator

COLLECTIONS = ["grievances", "appointments", "users", "companies", "departments",
               "counters", "notification_outbox", "otp_codes"]


def main():
    print("=" * 64)
    print("  Citizen Services Dashboard — Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/5] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} / {MONGODB_DB}")

    # ------------------------------------------------------------------
    # 2. Reset all collections
    # ------------------------------------------------------------------
    print("\n[2/5] Resetting collections...")
    for coll_name in COLLECTIONS:
        db[coll_name].drop()
    print("  MongoDB: " + ", ".join(COLLECTIONS))
    db.grievances.create_index("grievance_id", unique=True)
    db.appointments.create_index("appointment_id", unique=True)
    counters = SequenceAllocator(db).initialize_counters()
    print(f"  Counters: {counters}")

    # ------------------------------------------------------------------
    # 3. Seed tenants and users
    # ------------------------------------------------------------------
    print("\n[3/5] Companies & Users")
    tenants = import_companies(db)
    users = import_users(db, tenants)

    # ------------------------------------------------------------------
    # 4. Seed grievances
    # ------------------------------------------------------------------
    print("\n[4/5] Grievances")
    grievances = import_grievances(db, tenants, users)

    # ------------------------------------------------------------------
    # 5. Seed appointments
    # ------------------------------------------------------------------
    print("\n[5/5] Appointments")
    appointments = import_appointments(db, tenants, users)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    n_events = sum(len(d["timeline"]) for d in grievances + appointments)
    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Companies:         {len(tenants['companies'])}")
    print(f"  Departments:       {len(tenants['departments'])}")
    print(f"  Users:             {len(USERS)}")
    print(f"  Grievances:        {len(GRIEVANCES)}  (last {grievances[-1]['grievance_id']})")
    print(f"  Appointments:      {len(APPOINTMENTS)}  (last {appointments[-1]['appointment_id']})")
    print(f"  Timeline events:   {n_events}")
    print(f"  Notifications:     {db.notification_outbox.count_documents({})}")
    print()
    print("  Test credentials:")
    print("    Superadmin : superadmin / superadmin123")
    print("    Admin      : admin_pune / admin123")
    print("    Operator   : op_water   / operator123")
    print("=" * 64)
    mongo_client.close()


if __name__ == "__main__":
    main()
