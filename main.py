import datetime as dt
import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError

import auth
import bills
import expenses
import works
from auth import get_user_from_token
from database import DATABASE_NAME, DATABASE_URL, create_document, db, ensure_indexes
from errors import ConflictError, DependencyError, LedgerError, NotFoundError
from logging_config import setup_logging
from reports import generate_report
from schemas import Client as ClientSchema, Earning as EarningSchema, EarningType, Party as PartySchema
from utils import (
    BUSINESS_TIMEZONE,
    escape_regex,
    oid,
    page_count,
    parse_day,
    serialize_doc,
    start_of_day,
    to_utc_naive,
    validate_model,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes()
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Business Ledger API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(bills.router)
app.include_router(works.router)
app.include_router(expenses.router)


# -------------------- Error handling --------------------

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("%s %s duplicate key: %s", request.method, request.url.path, exc.details)
    return JSONResponse(status_code=409, content=ConflictError("Duplicate record").to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("%s %s database error: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content=DependencyError("Database unavailable").to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


# -------------------- Models (request/response) --------------------

class ClientCreateRequest(BaseModel):
    name: str
    email: EmailStr
    phone: str

class ClientUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

class PartyRequest(BaseModel):
    name: str
    contact: str = ""
    address: str = ""

class EarningCreateRequest(BaseModel):
    date: dt.date
    amount: float = Field(..., ge=0)
    type: EarningType
    source: str = "Manual"


# -------------------- Health --------------------

@app.get("/")
def read_root():
    return {"message": "Business Ledger API running"}

@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not available",
        "database_url": "set" if DATABASE_URL else "not set",
        "database_name": "set" if DATABASE_NAME else "not set",
        "collections": [],
    }
    if db is None:
        return JSONResponse(status_code=503, content=response)
    try:
        db.command("ping")
        response["database"] = "connected"
        response["collections"] = sorted(db.list_collection_names())
    except PyMongoError as e:
        logger.error("Health check failed: %s", e)
        response["database"] = f"error: {str(e)[:80]}"
        return JSONResponse(status_code=503, content=response)
    return response


# -------------------- Clients --------------------

def _client_fields(name: str, email: str, phone: str, owner: str) -> Dict[str, Any]:
    return validate_model(ClientSchema, name=name.strip(), email=email.lower(), phone=phone.strip(), createdBy=owner)

def _public_client(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(doc["_id"]), "name": doc["name"], "email": doc["email"], "phone": doc["phone"]}

def _email_taken(email: str, owner: str, exclude: Optional[ObjectId] = None) -> bool:
    q: Dict[str, Any] = {"email": email.lower(), "createdBy": owner}
    if exclude is not None:
        q["_id"] = {"$ne": exclude}
    return db["clients"].find_one(q) is not None

@app.post("/clients", status_code=201)
def create_client(payload: ClientCreateRequest, current=Depends(get_user_from_token)):
    fields = _client_fields(payload.name, payload.email, payload.phone, current["id"])
    if _email_taken(fields["email"], current["id"]):
        raise ConflictError("A client with this email already exists")
    client_id = create_document("clients", fields)
    return {"success": True, "data": _public_client(db["clients"].find_one({"_id": ObjectId(client_id)}))}

@app.get("/clients")
def list_clients(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    current=Depends(get_user_from_token),
):
    q: Dict[str, Any] = {"createdBy": current["id"]}
    if search.strip():
        pattern = {"$regex": escape_regex(search.strip()), "$options": "i"}
        q["$or"] = [{"name": pattern}, {"email": pattern}]
    total = db["clients"].count_documents(q)
    docs = db["clients"].find(q).sort("name", 1).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "clients": [_public_client(d) for d in docs],
            "totalPages": page_count(total, limit),
            "currentPage": page,
        },
    }

@app.get("/clients/{client_id}")
def get_client(client_id: str, current=Depends(get_user_from_token)):
    doc = db["clients"].find_one({"_id": oid(client_id), "createdBy": current["id"]})
    if not doc:
        raise NotFoundError("Client not found")
    out = _public_client(doc)
    works_q = {"partyId": client_id, "createdBy": current["id"]}
    totals = list(db["works"].aggregate([
        {"$match": works_q},
        {"$group": {"_id": "$paid", "amount": {"$sum": {"$multiply": ["$quantity", "$rate"]}}, "count": {"$sum": 1}}},
    ]))
    by_paid = {t["_id"]: t for t in totals}
    out["stats"] = {
        "works": sum(t["count"] for t in totals),
        "total_paid": by_paid.get(True, {}).get("amount", 0),
        "outstanding": by_paid.get(False, {}).get("amount", 0),
    }
    return {"success": True, "data": out}

@app.put("/clients/{client_id}")
def update_client(client_id: str, payload: ClientUpdateRequest, current=Depends(get_user_from_token)):
    doc = db["clients"].find_one({"_id": oid(client_id), "createdBy": current["id"]})
    if not doc:
        raise NotFoundError("Client not found")
    fields = _client_fields(
        payload.name or doc["name"],
        payload.email or doc["email"],
        payload.phone or doc["phone"],
        current["id"],
    )
    if _email_taken(fields["email"], current["id"], exclude=doc["_id"]):
        raise ConflictError("A client with this email already exists")
    fields["updated_at"] = datetime.now(timezone.utc)
    db["clients"].update_one({"_id": doc["_id"]}, {"$set": fields})
    return {"success": True, "data": _public_client(db["clients"].find_one({"_id": doc["_id"]}))}

@app.delete("/clients/{client_id}")
def delete_client(client_id: str, current=Depends(get_user_from_token)):
    res = db["clients"].delete_one({"_id": oid(client_id), "createdBy": current["id"]})
    if res.deleted_count == 0:
        raise NotFoundError("Client not found")
    return {"success": True, "message": "Client deleted successfully"}


# -------------------- Parties --------------------

def _party_fields(payload: PartyRequest, owner: str) -> Dict[str, Any]:
    return validate_model(
        PartySchema,
        name=payload.name.strip(),
        contact=payload.contact.strip(),
        address=payload.address.strip(),
        createdBy=owner,
    )

@app.get("/parties")
def list_parties(current=Depends(get_user_from_token)):
    return [serialize_doc(p) for p in db["parties"].find({"createdBy": current["id"]}).sort("name", 1)]

@app.get("/parties/{party_id}")
def get_party(party_id: str, current=Depends(get_user_from_token)):
    doc = db["parties"].find_one({"_id": oid(party_id), "createdBy": current["id"]})
    if not doc:
        raise NotFoundError("Party not found")
    return serialize_doc(doc)

@app.post("/parties", status_code=201)
def create_party(payload: PartyRequest, current=Depends(get_user_from_token)):
    party_id = create_document("parties", _party_fields(payload, current["id"]))
    return serialize_doc(db["parties"].find_one({"_id": ObjectId(party_id)}))

@app.put("/parties/{party_id}")
def update_party(party_id: str, payload: PartyRequest, current=Depends(get_user_from_token)):
    update = {**_party_fields(payload, current["id"]), "updated_at": datetime.now(timezone.utc)}
    res = db["parties"].update_one({"_id": oid(party_id), "createdBy": current["id"]}, {"$set": update})
    if res.matched_count == 0:
        raise NotFoundError("Party not found")
    return serialize_doc(db["parties"].find_one({"_id": oid(party_id)}))

@app.delete("/parties/{party_id}")
def delete_party(party_id: str, current=Depends(get_user_from_token)):
    res = db["parties"].delete_one({"_id": oid(party_id), "createdBy": current["id"]})
    if res.deleted_count == 0:
        raise NotFoundError("Party not found")
    return {"success": True, "message": "Party deleted successfully"}


# -------------------- Earnings --------------------

def _resolve_reference(earning: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # The reference is a weak pointer: the source may be gone
    reference = earning.get("reference")
    if not reference or not ObjectId.is_valid(reference):
        return None
    collection = "works" if earning.get("source") == "Work" else "bills"
    doc = db[collection].find_one({"_id": ObjectId(reference)})
    return serialize_doc(doc) if doc else None

def _public_earning(doc: Dict[str, Any], resolve: bool = False) -> Dict[str, Any]:
    out = {
        "id": str(doc["_id"]),
        "date": doc["date"].isoformat(),
        "amount": doc["amount"],
        "type": doc["type"],
        "source": doc["source"],
        "reference": doc.get("reference"),
        "createdBy": doc.get("createdBy"),
    }
    if resolve:
        out["referenceRecord"] = _resolve_reference(doc)
    return out

@app.get("/earnings")
def list_earnings(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    source: Optional[str] = None,
    current=Depends(get_user_from_token),
):
    q: Dict[str, Any] = {"createdBy": current["id"]}
    if startDate and endDate:
        start, end = parse_day(startDate, "startDate"), parse_day(endDate, "endDate")
        q["date"] = {"$gte": start_of_day(start), "$lt": start_of_day(end + timedelta(days=1))}
    if source:
        q["source"] = source
    docs = db["earnings"].find(q).sort("date", -1)
    return {"success": True, "data": [_public_earning(d, resolve=True) for d in docs]}

@app.post("/earnings", status_code=201)
def create_earning(payload: EarningCreateRequest, current=Depends(get_user_from_token)):
    earning = EarningSchema(
        date=start_of_day(payload.date),
        amount=payload.amount,
        type=payload.type,
        source=payload.source.strip() or "Manual",
        createdBy=current["id"],
    )
    # Manual earnings carry no reference; keep the field absent for the sparse index
    earning_id = create_document("earnings", earning.model_dump(exclude_none=True))
    return {"success": True, "data": _public_earning(db["earnings"].find_one({"_id": ObjectId(earning_id)}))}

@app.delete("/earnings/{earning_id}")
def delete_earning(earning_id: str, current=Depends(get_user_from_token)):
    doc = db["earnings"].find_one({"_id": oid(earning_id), "createdBy": current["id"]})
    if not doc:
        raise NotFoundError("Earning not found")
    if doc.get("reference"):
        raise ConflictError(f"Earning is managed by {doc['source']}; change its paid status instead")
    db["earnings"].delete_one({"_id": doc["_id"]})
    return {"success": True, "message": "Earning deleted"}


# -------------------- Reports --------------------

@app.get("/reports")
def get_reports(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    type: Optional[str] = None,
    current=Depends(get_user_from_token),
):
    start = parse_day(startDate, "startDate")
    end = parse_day(endDate, "endDate")
    groups = generate_report(start, end, type or "", owner=current["id"])
    return {
        "success": True,
        "data": [{"key": g.key, "total": g.total} for g in groups],
        "meta": {
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "reportType": type,
            "count": len(groups),
        },
    }


# -------------------- Dashboard --------------------

def _sum(collection: str, match: Dict[str, Any]) -> float:
    rows = list(db[collection].aggregate([
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
    ]))
    return rows[0]["total"] if rows else 0

@app.get("/dashboard/summary")
def dashboard_summary(current=Depends(get_user_from_token)):
    owner = {"createdBy": current["id"]}
    return {
        "totalRevenue": _sum("earnings", owner),
        "totalExpenses": _sum("expenses", owner),
        "pendingInvoices": db["bills"].count_documents({**owner, "status": {"$in": ["pending", "due"]}}),
        "activeClients": len(db["bills"].distinct("partyName", owner)),
    }

@app.get("/dashboard/revenue-trend")
def revenue_trend(months: int = Query(6, ge=1, le=24), current=Depends(get_user_from_token)):
    today = date.today()
    y, m = today.year, today.month
    keys = []
    for _ in range(months):
        keys.append((y, m))
        y, m = (y - 1, 12) if m == 1 else (y, m - 1)
    keys.reverse()
    first = datetime(keys[0][0], keys[0][1], 1)

    rows = db["earnings"].aggregate([
        {"$match": {"createdBy": current["id"], "date": {"$gte": first}}},
        {"$group": {"_id": {"y": {"$year": "$date"}, "m": {"$month": "$date"}}, "revenue": {"$sum": "$amount"}}},
    ])
    found = {(r["_id"]["y"], r["_id"]["m"]): r["revenue"] for r in rows}
    return [
        {"month": date(ky, km, 1).strftime("%b %y"), "revenue": found.get((ky, km), 0)}
        for ky, km in keys
    ]

def _day_window(start: date, end: date) -> Dict[str, datetime]:
    """Inclusive window over fields stored as UTC midnight of a calendar day."""
    return {"$gte": start_of_day(start), "$lt": start_of_day(end + timedelta(days=1))}

def _local_window(start: date, end: date) -> Dict[str, datetime]:
    """Inclusive local-day window converted to stored UTC instants."""
    lo = datetime.combine(start, time.min, tzinfo=BUSINESS_TIMEZONE)
    hi = datetime.combine(end + timedelta(days=1), time.min, tzinfo=BUSINESS_TIMEZONE)
    return {"$gte": to_utc_naive(lo), "$lt": to_utc_naive(hi)}

def _earnings_match(owner: str, start: date, end: date, work_only: bool) -> Dict[str, Any]:
    # Earnings mirroring a work carry its timestamp; all others are day-dated
    timed = {"source": "Work", "reference": {"$exists": True}, "date": _local_window(start, end)}
    if work_only:
        dated = {"source": "Work", "reference": {"$exists": False}, "date": _day_window(start, end)}
    else:
        dated = {
            "$or": [{"source": {"$ne": "Work"}}, {"reference": {"$exists": False}}],
            "date": _day_window(start, end),
        }
    return {"createdBy": owner, "$or": [timed, dated]}

@app.get("/dashboard/budget")
def budget(
    date_: Optional[str] = Query(None, alias="date"),
    source: Literal["Work", "all"] = "Work",
    current=Depends(get_user_from_token),
):
    target = parse_day(date_, "date") if date_ else datetime.now(BUSINESS_TIMEZONE).date()
    month_end = (target.replace(day=28) + timedelta(days=4)).replace(day=1) - timedelta(days=1)
    windows = {
        "daily": (target, target, target.isoformat()),
        "monthly": (target.replace(day=1), month_end, target.strftime("%B %Y")),
        "yearly": (target.replace(month=1, day=1), target.replace(month=12, day=31), target.strftime("%Y")),
    }
    out: Dict[str, Any] = {}
    for name, (start, end, label) in windows.items():
        earned = _sum("earnings", _earnings_match(current["id"], start, end, work_only=source == "Work"))
        spent = _sum("expenses", {"createdBy": current["id"], "date": _day_window(start, end)})
        out[name] = {"period": label, "totalEarnings": earned, "totalExpenses": spent, "budget": earned - spent}
    return {"success": True, "data": out}
