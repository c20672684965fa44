import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from auth import get_user_from_token
from database import create_document, db, transaction
from errors import NotFoundError, ValidationError
from reconciliation import UNPAID, reconcile_earning, work_descriptor, work_state
from schemas import Work as WorkSchema
from utils import BUSINESS_TIMEZONE, escape_regex, oid, page_count, to_utc_naive, validate_model

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/works", tags=["Works"])

SORT_OPTIONS = {
    "quantity": [("quantity", -1)],
    "rate": [("rate", -1)],
    "dateAndTime": [("dateAndTime", -1)],
}


class WorkCreateRequest(BaseModel):
    particulars: str
    type: str
    size: str
    party: str
    dateAndTime: Optional[datetime] = None
    quantity: float
    rate: float
    currency: str = "INR"
    paid: bool = False

class WorkUpdateRequest(BaseModel):
    particulars: Optional[str] = None
    type: Optional[str] = None
    size: Optional[str] = None
    party: Optional[str] = None
    dateAndTime: Optional[datetime] = None
    quantity: Optional[float] = None
    rate: Optional[float] = None
    currency: Optional[str] = None
    paid: Optional[bool] = None


def _as_utc(value: datetime) -> datetime:
    # Times without an offset are wall-clock times in the business timezone.
    if value.tzinfo is None:
        value = value.replace(tzinfo=BUSINESS_TIMEZONE)
    return to_utc_naive(value)


def _local_time(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).astimezone(BUSINESS_TIMEZONE).strftime("%Y-%m-%d %H:%M:%S")


def serialize_work(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "particulars": doc["particulars"],
        "type": doc["type"],
        "size": doc["size"],
        "party": doc["party"],
        "partyId": doc["partyId"],
        "dateAndTime": _local_time(doc["dateAndTime"]),
        "quantity": doc["quantity"],
        "rate": doc["rate"],
        "total": doc["quantity"] * doc["rate"],
        "currency": doc["currency"],
        "paid": doc["paid"],
    }


def _check_currency(currency: Optional[str]) -> None:
    if currency is not None and currency != "INR":
        raise ValidationError("Currency must be INR", [f"currency: {currency}"])


def _find_client(party: str, owner: str) -> Dict[str, Any]:
    client = db["clients"].find_one({
        "name": {"$regex": f"^{escape_regex(party.strip())}$", "$options": "i"},
        "createdBy": owner,
    })
    if not client:
        raise ValidationError("Party not found", [f"party: {party}"])
    return client


def _owned(work_id: str, current: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": oid(work_id), "createdBy": current["id"]}


@router.post("", status_code=201)
def create_work(payload: WorkCreateRequest, current=Depends(get_user_from_token)):
    _check_currency(payload.currency)
    client = _find_client(payload.party, current["id"])
    when = _as_utc(payload.dateAndTime) if payload.dateAndTime else datetime.now(timezone.utc).replace(tzinfo=None)
    work = validate_model(WorkSchema, **{
        **payload.model_dump(exclude={"dateAndTime"}),
        "party": client["name"],
        "partyId": str(client["_id"]),
        "dateAndTime": when,
        "createdBy": current["id"],
    })
    with transaction() as session:
        work_id = create_document("works", work, session=session)
        doc = db["works"].find_one({"_id": ObjectId(work_id)}, session=session)
        reconcile_earning(work_descriptor(doc), UNPAID, work_state(doc), owner=current["id"], session=session)
    return {"success": True, "data": serialize_work(doc)}


@router.get("")
def list_works(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    type: Optional[str] = None,
    sort: Optional[str] = None,
    current=Depends(get_user_from_token),
):
    q: Dict[str, Any] = {"createdBy": current["id"]}
    if search.strip():
        pattern = {"$regex": escape_regex(search.strip()), "$options": "i"}
        q["$or"] = [{"particulars": pattern}, {"party": pattern}]
    if type and type != "All":
        q["type"] = type

    total = db["works"].count_documents(q)
    docs = db["works"].find(q).sort(SORT_OPTIONS.get(sort, [("created_at", -1)])).skip((page - 1) * limit).limit(limit)
    total_pages = page_count(total, limit)
    return {
        "success": True,
        "data": {
            "docs": [serialize_work(d) for d in docs],
            "totalDocs": total,
            "limit": limit,
            "page": page,
            "totalPages": total_pages,
            "hasPrevPage": page > 1,
            "hasNextPage": page < total_pages,
            "prevPage": page - 1 if page > 1 else None,
            "nextPage": page + 1 if page < total_pages else None,
        },
    }


@router.get("/{work_id}")
def get_work(work_id: str, current=Depends(get_user_from_token)):
    doc = db["works"].find_one(_owned(work_id, current))
    if not doc:
        raise NotFoundError("Work not found")
    return {"success": True, "data": serialize_work(doc)}


@router.patch("/{work_id}")
def update_work(work_id: str, payload: WorkUpdateRequest, current=Depends(get_user_from_token)):
    _check_currency(payload.currency)
    changes = payload.model_dump(exclude_none=True)
    if "party" in changes:
        client = _find_client(changes["party"], current["id"])
        changes["party"] = client["name"]
        changes["partyId"] = str(client["_id"])
    if "dateAndTime" in changes:
        changes["dateAndTime"] = _as_utc(changes["dateAndTime"])

    with transaction() as session:
        previous = db["works"].find_one(_owned(work_id, current), session=session)
        if not previous:
            raise NotFoundError("Work not found")
        stored = {k: v for k, v in previous.items() if k not in ("_id", "created_at", "updated_at")}
        updated = validate_model(WorkSchema, **{**stored, **changes})
        reconcile_earning(
            work_descriptor(previous),
            work_state(previous),
            work_state(updated),
            owner=current["id"],
            session=session,
        )
        updated["updated_at"] = datetime.now(timezone.utc)
        db["works"].update_one({"_id": previous["_id"]}, {"$set": updated}, session=session)
        doc = db["works"].find_one({"_id": previous["_id"]}, session=session)
    return {"success": True, "data": serialize_work(doc)}


@router.delete("/{work_id}")
def delete_work(work_id: str, current=Depends(get_user_from_token)):
    with transaction() as session:
        work = db["works"].find_one(_owned(work_id, current), session=session)
        if not work:
            raise NotFoundError("Work not found")
        reconcile_earning(work_descriptor(work), work_state(work), UNPAID, owner=current["id"], session=session)
        db["works"].delete_one({"_id": work["_id"]}, session=session)
    logger.info("Work %s deleted", work_id)
    return {"success": True, "data": {}}
