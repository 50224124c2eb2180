# Seed data: Companies, departments and staff users

from .config import new_id, now_utc, pwd_context

# ---------------------------------------------------------------------------
# Tenants and their departments
# ---------------------------------------------------------------------------
COMPANIES = [
    {"key": "zp_pune", "name": "Zilla Parishad Pune", "code": "ZPPUNE",
     "contact_email": "ceo.zppune@maharashtra.gov.in", "contact_phone": "02026134806",
     "departments": [
         ("water", "Water Supply & Sanitation", "Drinking water schemes, tankers, pipelines"),
         ("health", "Public Health", "Primary health centres and sub-centres"),
         ("works", "Public Works", "Village roads, culverts and buildings"),
     ]},
    {"key": "zp_puri", "name": "Zilla Parishad Puri", "code": "ZPPURI",
     "contact_email": "ceo.zppuri@odisha.gov.in", "contact_phone": "06752222002",
     "departments": [
         ("rwss", "Rural Water Supply", "Piped water and tube wells"),
         ("housing", "Rural Housing", "PMAY-G beneficiaries and instalments"),
     ]},
]

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
USERS = [
    # ---- Platform (1) ----
    {"username": "superadmin", "password": "superadmin123",
     "full_name": "Platform Administrator", "email": "platform@citizen-services.in",
     "phone": None, "role": "superadmin", "company": None, "department": None},

    # ---- ZP Pune (5) ----
    {"username": "admin_pune", "password": "admin123",
     "full_name": "Smt. Shalini Deshmukh, CEO", "email": "ceo.zppune@maharashtra.gov.in",
     "phone": "9822001100", "role": "company_admin", "company": "zp_pune", "department": None},

    {"username": "head_water", "password": "head123",
     "full_name": "Er. Vikas Jadhav, EE Water", "email": "ee.water@zppune.gov.in",
     "phone": "9822001101", "role": "department_admin", "company": "zp_pune", "department": "water"},

    {"username": "op_water", "password": "operator123",
     "full_name": "Sri Amol Pawar", "email": "amol.pawar@zppune.gov.in",
     "phone": "9822001102", "role": "operator", "company": "zp_pune", "department": "water"},

    {"username": "op_health", "password": "operator123",
     "full_name": "Dr. Neha Kulkarni", "email": "neha.kulkarni@zppune.gov.in",
     "phone": "9822001103", "role": "operator", "company": "zp_pune", "department": "health"},

    {"username": "op_works", "password": "operator123",
     "full_name": "Sri Rahul Shinde", "email": "rahul.shinde@zppune.gov.in",
     "phone": "9822001104", "role": "operator", "company": "zp_pune", "department": "works"},

    # ---- ZP Puri (2) ----
    {"username": "admin_puri", "password": "admin123",
     "full_name": "Sri Debashis Swain, CEO", "email": "ceo.zppuri@odisha.gov.in",
     "phone": "9988776606", "role": "company_admin", "company": "zp_puri", "department": None},

    {"username": "op_rwss", "password": "operator123",
     "full_name": "Er. Anil Panigrahi, EE-RWSS", "email": "anil.rwss@zppuri.gov.in",
     "phone": "9988776601", "role": "operator", "company": "zp_puri", "department": "rwss"},
]

# ---------------------------------------------------------------------------
# Import functions
# ---------------------------------------------------------------------------
def import_companies(db) -> dict:
    """Insert companies and their departments.

    Returns {"companies": {key: _id}, "departments": {(company_key, dept_key): _id}}.
    """
    print("\n  Importing companies and departments...")
    company_ids: dict[str, str] = {}
    department_ids: dict[tuple, str] = {}
    for c in COMPANIES:
        cid = new_id()
        db.companies.insert_one({
            "_id": cid, "name": c["name"], "code": c["code"],
            "contact_email": c["contact_email"], "contact_phone": c["contact_phone"],
            "is_deleted": False, "created_at": now_utc(),
        })
        company_ids[c["key"]] = cid
        print(f"    {c['code']:10s}  {c['name']}")
        for key, name, description in c["departments"]:
            did = new_id()
            db.departments.insert_one({
                "_id": did, "name": name, "description": description,
                "company_id": cid, "is_deleted": False, "created_at": now_utc(),
            })
            department_ids[(c["key"], key)] = did
            print(f"      - {name}")
    print(f"  => {len(company_ids)} companies, {len(department_ids)} departments created")
    return {"companies": company_ids, "departments": department_ids}


def import_users(db, tenants: dict) -> dict[str, dict]:
    """Insert seed users into MongoDB. Returns {username: user_doc} mapping."""
    print("\n  Importing seed users...")
    users: dict[str, dict] = {}
    for u in USERS:
        company_id = tenants["companies"].get(u["company"]) if u["company"] else None
        department_id = (tenants["departments"].get((u["company"], u["department"]))
                         if u["department"] else None)
        user_doc = {
            "_id": new_id(),
            "username": u["username"],
            "hashed_password": pwd_context.hash(u["password"]),
            "full_name": u["full_name"],
            "email": u["email"],
            "phone": u["phone"],
            "role": u["role"],
            "company_id": company_id,
            "department_id": department_id,
            "is_active": True,
            "is_deleted": False,
            "created_at": now_utc(),
        }
        db.users.insert_one(user_doc)
        users[u["username"]] = user_doc
        print(f"    {u['username']:20s}  ({u['role']})")
    db.users.create_index([("username", 1)], unique=True)
    print(f"  => {len(USERS)} users created")
    return users
