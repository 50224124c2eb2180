# Seed data: Grievances and appointments
#
# Every record is created through EntityWorkflow so that it receives a real
# GRV/APT number from the counters collection and a timeline that matches
# its status. Each record lists the lifecycle steps to replay:
#   ("assign", username) | ("status", NEW_STATUS, remarks) | ("transfer", dept_key, reason)

from datetime import timedelta

from tracking.ids import SequenceAllocator
from tracking.notifications import Notifier
from tracking.workflow import EntityWorkflow

from .config import PRIORITY_SLA_HOURS, STORE_TIMEOUT_SECONDS, geojson_point, now_utc

# ---------------------------------------------------------------------------
# Grievance records
# ---------------------------------------------------------------------------
GRIEVANCES = [
    {"company": "zp_pune", "department": "water", "district": "Pune", "priority": "HIGH",
     "citizen_name": "Sunita Gaikwad", "citizen_phone": "9890012345", "language": "mr",
     "category": "Water Supply",
     "description": "No piped water in Wagholi ward 4 for the last 9 days. Tanker comes once a week.",
     "steps": [("assign", "op_water"),
               ("status", "IN_PROGRESS", "Pipeline leak located near the overhead tank"),
               ("status", "RESOLVED", "Leak repaired and supply restored"),
               ("status", "CLOSED", None)],
     "resolution": "Leaking joint on the 200mm main replaced; supply back on alternate days."},

    {"company": "zp_pune", "department": "water", "district": "Pune", "priority": "URGENT",
     "citizen_name": "Ramesh Kamble", "citizen_phone": "9890012346", "language": "mr",
     "category": "Water Quality",
     "description": "Muddy water from the village well after the rains; children are falling sick.",
     "steps": [("assign", "op_water"), ("status", "IN_PROGRESS", "Sample sent to district lab")]},

    {"company": "zp_pune", "department": "health", "district": "Pune", "priority": "MEDIUM",
     "citizen_name": "Farida Shaikh", "citizen_phone": "9890012347", "language": "hi",
     "category": "Primary Health Centre",
     "description": "PHC at Uruli Kanchan closes at 1 pm although the board says 5 pm.",
     "steps": [("assign", "op_health")]},

    {"company": "zp_pune", "department": "health", "district": "Pune", "priority": "LOW",
     "citizen_name": "Ganesh More", "citizen_phone": "9890012348", "language": "en",
     "category": "Vaccination",
     "description": "Wrong date printed on my child's vaccination card.",
     "steps": [("transfer", "works", "Raised against the wrong department"),
               ("status", "REJECTED", "Duplicate of an earlier request")]},

    {"company": "zp_pune", "department": "works", "district": "Nashik", "priority": "HIGH",
     "citizen_name": "Prakash Wagh", "citizen_phone": "9890012349", "language": "mr",
     "category": "Roads",
     "description": "Culvert on the Sinnar-Ghoti road collapsed; school bus cannot pass.",
     "steps": [("assign", "op_works"), ("status", "IN_PROGRESS", "Temporary diversion laid")]},

    {"company": "zp_pune", "department": "works", "district": "Nagpur", "priority": "MEDIUM",
     "citizen_name": "Kavita Raut", "citizen_phone": "9890012350", "language": "en",
     "category": "Street Lights",
     "description": "Six street lights on the main road of Hingna village are not working.",
     "steps": []},

    {"company": "zp_pune", "department": None, "district": "Pune", "priority": "LOW",
     "citizen_name": "Sachin Patil", "citizen_phone": "9890012351", "language": "en",
     "category": None,
     "description": "Request to know the status of the gram sabha resolution on the new anganwadi.",
     "steps": [("status", "CANCELLED", "Withdrawn by citizen")]},

    {"company": "zp_puri", "department": "rwss", "district": "Puri", "priority": "URGENT",
     "citizen_name": "Kuni Sabar", "citizen_phone": "9876543213", "language": "en",
     "category": "Water Supply",
     "description": "Tube well in Sabar sahi has been dry for three weeks.",
     "steps": [("assign", "op_rwss"),
               ("status", "RESOLVED", "New tube well commissioned")],
     "resolution": "Replacement tube well bored to 180 ft and handed over to the VWSC."},

    {"company": "zp_puri", "department": "housing", "district": "Khordha", "priority": "MEDIUM",
     "citizen_name": "Anita Behera", "citizen_phone": "9876543211", "language": "en",
     "category": "PMAY-G",
     "description": "Second instalment of PMAY-G not credited though the roof is complete.",
     "steps": [("assign", "op_rwss")]},
]

# ---------------------------------------------------------------------------
# Appointment records
# ---------------------------------------------------------------------------
APPOINTMENTS = [
    {"company": "zp_pune", "department": "water", "language": "mr",
     "citizen_name": "Sunita Gaikwad", "citizen_phone": "9890012345",
     "purpose": "Meet the Executive Engineer about the Wagholi pipeline extension",
     "steps": [("assign", "head_water"),
               ("confirm", 3, "11:00"),
               ("status", "COMPLETED", "Extension added to next year's plan")]},

    {"company": "zp_pune", "department": "health", "language": "hi",
     "citizen_name": "Farida Shaikh", "citizen_phone": "9890012347",
     "purpose": "Discuss PHC timings with the medical officer",
     "steps": [("confirm", 5, "15:30")]},

    {"company": "zp_pune", "department": "works", "language": "en",
     "citizen_name": "Prakash Wagh", "citizen_phone": "9890012349",
     "purpose": "Submit petition for culvert reconstruction",
     "steps": [("confirm", -1, "10:00"), ("status", "NO_SHOW", None)]},

    {"company": "zp_pune", "department": None, "language": "en",
     "citizen_name": "Kavita Raut", "citizen_phone": "9890012350",
     "purpose": "General enquiry about the gram panchayat budget",
     "steps": []},

    {"company": "zp_puri", "department": "housing", "language": "en",
     "citizen_name": "Anita Behera", "citizen_phone": "9876543211",
     "purpose": "Verification of PMAY-G instalment documents",
     "steps": [("status", "CANCELLED", "Resolved over phone")]},
]


# ---------------------------------------------------------------------------
# Lifecycle replay
# ---------------------------------------------------------------------------
def _replay(flow: EntityWorkflow, doc: dict, record: dict, tenants: dict, users: dict, actor: str) -> dict:
    company = record["company"]
    for step in record.get("steps", []):
        kind = step[0]
        if kind == "assign":
            target = users[step[1]]
            doc = flow.assign(doc["_id"], target["_id"], target["full_name"], actor,
                              to_department_id=target.get("department_id"))
        elif kind == "transfer":
            dept_id = tenants["departments"][(company, step[1])]
            doc = flow.transfer_department(doc["_id"], dept_id, actor, reason=step[2])
        elif kind == "confirm":
            day = (now_utc() + timedelta(days=step[1])).strftime("%Y-%m-%d")
            doc = flow.update_status(doc["_id"], "CONFIRMED", actor, "Slot booked",
                                     extra={"appointment_date": day, "appointment_time": step[2]})
        else:
            extra = {"resolution": record.get("resolution")} if step[1] == "RESOLVED" else None
            doc = flow.update_status(doc["_id"], step[1], actor, step[2], extra=extra)
    return doc


def _workflow(kind: str, db) -> EntityWorkflow:
    return EntityWorkflow(kind, db, SequenceAllocator(db), Notifier(db), timeout=STORE_TIMEOUT_SECONDS)


def import_grievances(db, tenants: dict, users: dict) -> list[dict]:
    """Create seed grievances and replay their lifecycle. Returns the final documents."""
    print("\n  Importing grievances...")
    flow = _workflow("grievance", db)
    inserted = []
    for i, g in enumerate(GRIEVANCES):
        admin = next(u for u in users.values()
                     if u["role"] == "company_admin" and u["company_id"] == tenants["companies"][g["company"]])
        created = now_utc()
        fields = {
            "company_id": tenants["companies"][g["company"]],
            "department_id": tenants["departments"].get((g["company"], g["department"])),
            "citizen_name": g["citizen_name"], "citizen_phone": g["citizen_phone"],
            "citizen_whatsapp": g["citizen_phone"],
            "description": g["description"], "category": g["category"],
            "priority": g["priority"], "language": g["language"],
            "location": geojson_point(g["district"]),
            "resolution": None, "resolved_at": None, "closed_at": None,
            "sla_due_date": created + timedelta(hours=PRIORITY_SLA_HOURS[g["priority"]]),
            "sla_breached": False,
        }
        doc = flow.create(fields, admin["_id"])
        doc = _replay(flow, doc, g, tenants, users, admin["_id"])
        inserted.append(doc)
        print(f"    [{i+1:2d}/{len(GRIEVANCES)}] {doc['status']:11s}  {doc['grievance_id']}  "
              f"{g['description'][:44]}...")
    print(f"  => {len(GRIEVANCES)} grievances imported")
    return inserted


def import_appointments(db, tenants: dict, users: dict) -> list[dict]:
    """Create seed appointments and replay their lifecycle. Returns the final documents."""
    print("\n  Importing appointments...")
    flow = _workflow("appointment", db)
    inserted = []
    for i, a in enumerate(APPOINTMENTS):
        admin = next(u for u in users.values()
                     if u["role"] == "company_admin" and u["company_id"] == tenants["companies"][a["company"]])
        fields = {
            "company_id": tenants["companies"][a["company"]],
            "department_id": tenants["departments"].get((a["company"], a["department"])),
            "citizen_name": a["citizen_name"], "citizen_phone": a["citizen_phone"],
            "citizen_whatsapp": a["citizen_phone"],
            "purpose": a["purpose"], "language": a["language"],
            "appointment_date": None, "appointment_time": None, "completed_at": None,
        }
        doc = flow.create(fields, admin["_id"])
        doc = _replay(flow, doc, a, tenants, users, admin["_id"])
        inserted.append(doc)
        print(f"    [{i+1:2d}/{len(APPOINTMENTS)}] {doc['status']:9s}  {doc['appointment_id']}  "
              f"{a['purpose'][:44]}...")
    print(f"  => {len(APPOINTMENTS)} appointments imported")
    return inserted
