import datetime as dt
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from auth import get_user_from_token
from balance import compute_party_balance
from database import create_document, db, next_sequence, transaction
from errors import NotFoundError, ValidationError
from reconciliation import UNPAID, bill_balance, bill_descriptor, bill_state, reconcile_earning, row_total, rows_total
from schemas import Bill as BillSchema, BillRow as BillRowSchema
from utils import (
    day_string,
    escape_regex,
    oid,
    page_count,
    parse_day,
    period_group,
    period_key,
    period_keys,
    serialize_doc,
    start_of_day,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bills", tags=["Bills"])

BILL_STATUSES = ("pending", "due", "paid")

SORT_OPTIONS = {
    "newest": [("date", -1), ("serialNumber", -1)],
    "oldest": [("date", 1), ("serialNumber", 1)],
    "highest-amount": [("total", -1)],
    "lowest-amount": [("total", 1)],
}


class BillRequest(BaseModel):
    partyName: str
    rows: List[BillRowSchema]
    date: Optional[dt.date] = None
    advance: float = Field(0, ge=0)
    previousBalance: float = Field(0, ge=0)
    due: float = Field(0, ge=0)
    status: str = "pending"
    note: str = ""


def serialize_bill(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["date"] = day_string(doc.get("date"))
    return out


def _owned(bill_id: str, current: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": oid(bill_id), "createdBy": current["id"]}


def bill_fields(payload: BillRequest) -> Dict[str, Any]:
    """Normalize a bill request into the stored editable fields."""
    party_name = payload.partyName.strip().lower()
    if not party_name:
        raise ValidationError("Party name is required", ["partyName: missing"])
    if not payload.rows:
        raise ValidationError("At least one row is required", ["rows: empty"])
    status = payload.status.strip().lower()
    if status not in BILL_STATUSES:
        raise ValidationError("Invalid status", [f"status: must be one of {', '.join(BILL_STATUSES)}"])

    rows = []
    for row in payload.rows:
        data = row.model_dump()
        data["particulars"] = data["particulars"].strip()
        data["customType"] = data["customType"].strip()
        data["customSize"] = data["customSize"].strip()
        data["total"] = row_total(data)
        rows.append(data)

    total = rows_total(rows)
    balance = bill_balance(total, payload.previousBalance, payload.advance, status)
    if balance < 0:
        raise ValidationError("Advance cannot exceed total plus previous balance", ["advance: too large"])
    return {
        "partyName": party_name,
        "rows": rows,
        "total": total,
        "advance": payload.advance,
        "previousBalance": payload.previousBalance,
        "due": 0 if status == "paid" else payload.due,
        "balance": balance,
        "status": status,
        "note": payload.note.strip(),
    }


# -------------------- Create / list --------------------

@router.post("", status_code=201)
def create_bill(payload: BillRequest, current=Depends(get_user_from_token)):
    fields = bill_fields(payload)
    bill_date = start_of_day(payload.date) if payload.date else datetime.now(timezone.utc).replace(tzinfo=None)
    # Serial gaps after an aborted transaction are accepted; duplicates are not.
    serial = next_sequence("bill_serial")
    bill = BillSchema(serialNumber=serial, date=bill_date, createdBy=current["id"], **fields)
    with transaction() as session:
        bill_id = create_document("bills", bill, session=session)
        doc = db["bills"].find_one({"_id": ObjectId(bill_id)}, session=session)
        reconcile_earning(bill_descriptor(doc), UNPAID, bill_state(doc), owner=current["id"], session=session)
    logger.info("Bill #%s created for %s (%s)", serial, fields["partyName"], fields["status"])
    return serialize_bill(doc)


@router.get("")
def list_bills(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sortBy: str = "newest",
    search: str = "",
    current=Depends(get_user_from_token),
):
    q: Dict[str, Any] = {"createdBy": current["id"]}
    if search.strip():
        q["partyName"] = {"$regex": escape_regex(search.strip()), "$options": "i"}
    cursor = db["bills"].find(q).sort(SORT_OPTIONS.get(sortBy, SORT_OPTIONS["newest"])).skip((page - 1) * limit).limit(limit)
    total = db["bills"].count_documents(q)
    return {
        "bills": [serialize_bill(b) for b in cursor],
        "totalDocs": total,
        "totalPages": page_count(total, limit),
        "currentPage": page,
    }


@router.get("/parties")
def list_party_names(current=Depends(get_user_from_token)):
    names = db["bills"].distinct("partyName", {"createdBy": current["id"]})
    return sorted({n.lower() for n in names})


@router.get("/party/{party_name}")
def get_party_balance(party_name: str, exact: bool = False, current=Depends(get_user_from_token)):
    result = compute_party_balance(party_name, exact=exact, owner=current["id"])
    if not result.found:
        return JSONResponse(
            status_code=404,
            content={
                "found": False,
                "message": f'No bills found for party "{party_name.strip()}"',
                "partyName": party_name.strip(),
                "totalBalance": 0,
                "matchedPartyNames": [],
            },
        )
    return {
        "found": True,
        "partyName": party_name.strip(),
        "totalBalance": result.total_balance,
        "latestBill": serialize_bill(result.latest_record),
        "matchedPartyNames": result.matched_names,
    }


# -------------------- Revenue stats --------------------

@router.get("/stats")
def bill_stats(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    timeFrame: Literal["daily", "monthly", "yearly"] = "daily",
    current=Depends(get_user_from_token),
):
    end = parse_day(endDate, "endDate") if endDate else date.today()
    start = parse_day(startDate, "startDate") if startDate else end - timedelta(days=30)
    if start > end:
        raise ValidationError("Start date must be before end date")

    stats = db["bills"].aggregate([
        {"$match": {
            "createdBy": current["id"],
            "status": "paid",
            "date": {"$gte": start_of_day(start), "$lt": start_of_day(end + timedelta(days=1))},
        }},
        {"$group": {"_id": period_group(timeFrame), "totalRevenue": {"$sum": "$total"}}},
    ])
    found = {period_key(s["_id"], timeFrame): s["totalRevenue"] for s in stats}
    return [{"date": key, "totalRevenue": found.get(key, 0)} for key in period_keys(start, end, timeFrame)]


# -------------------- Single bill --------------------

@router.get("/serial/{serial_number}")
def get_bill_by_serial(serial_number: int, current=Depends(get_user_from_token)):
    doc = db["bills"].find_one({"serialNumber": serial_number, "createdBy": current["id"]})
    if not doc:
        raise NotFoundError("Bill not found")
    return serialize_bill(doc)


@router.get("/{bill_id}")
def get_bill(bill_id: str, current=Depends(get_user_from_token)):
    doc = db["bills"].find_one(_owned(bill_id, current))
    if not doc:
        raise NotFoundError("Bill not found")
    return serialize_bill(doc)


@router.put("/{bill_id}")
def update_bill(bill_id: str, payload: BillRequest, current=Depends(get_user_from_token)):
    fields = bill_fields(payload)
    if payload.date:
        fields["date"] = start_of_day(payload.date)
    with transaction() as session:
        previous = db["bills"].find_one(_owned(bill_id, current), session=session)
        if not previous:
            raise NotFoundError("Bill not found")
        updated = {**previous, **fields}
        reconcile_earning(
            bill_descriptor(previous),
            bill_state(previous),
            bill_state(updated),
            owner=current["id"],
            session=session,
        )
        fields["updated_at"] = datetime.now(timezone.utc)
        db["bills"].update_one({"_id": previous["_id"]}, {"$set": fields}, session=session)
        doc = db["bills"].find_one({"_id": previous["_id"]}, session=session)
    return serialize_bill(doc)


@router.delete("/{bill_id}")
def delete_bill(bill_id: str, current=Depends(get_user_from_token)):
    with transaction() as session:
        bill = db["bills"].find_one(_owned(bill_id, current), session=session)
        if not bill:
            raise NotFoundError("Bill not found")
        reconcile_earning(bill_descriptor(bill), bill_state(bill), UNPAID, owner=current["id"], session=session)
        db["bills"].delete_one({"_id": bill["_id"]}, session=session)
    logger.info("Bill #%s deleted", bill["serialNumber"])
    return {"success": True, "message": "Bill deleted successfully"}
