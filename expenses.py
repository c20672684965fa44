import datetime as dt
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from auth import get_user_from_token
from database import create_document, db
from errors import NotFoundError, ValidationError
from schemas import Expense as ExpenseSchema, ExpenseCategory, ExpenseType
from utils import oid, parse_day, period_group, period_key, serialize_doc, start_of_day

logger = logging.getLogger(__name__)

MONTHLY_BUDGET = float(os.getenv("MONTHLY_BUDGET", "200000"))

router = APIRouter(prefix="/expenses", tags=["Expenses"])


class ExpenseRequest(BaseModel):
    date: dt.date
    description: str = Field(..., min_length=1)
    category: ExpenseCategory
    amount: float = Field(..., gt=0)
    type: ExpenseType


def serialize_expense(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["date"] = doc["date"].strftime("%Y-%m-%d")
    return out


def window_match(owner: str, startDate: Optional[str], endDate: Optional[str]) -> Dict[str, Any]:
    """Owner filter plus an inclusive date window when both bounds are given."""
    match: Dict[str, Any] = {"createdBy": owner}
    if startDate and endDate:
        start = parse_day(startDate, "startDate")
        end = parse_day(endDate, "endDate")
        if start > end:
            raise ValidationError("Start date must be before end date")
        match["date"] = {"$gte": start_of_day(start), "$lt": start_of_day(end + timedelta(days=1))}
    return match


def _owned(expense_id: str, current: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": oid(expense_id), "createdBy": current["id"]}


# -------------------- Analytics --------------------

@router.get("/summary")
def expense_summary(startDate: Optional[str] = None, endDate: Optional[str] = None, current=Depends(get_user_from_token)):
    match = window_match(current["id"], startDate, endDate)
    by_type = {d["_id"]: d["total"] for d in db["expenses"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}}},
    ])}
    highest = list(db["expenses"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$category", "total": {"$sum": "$amount"}}},
        {"$sort": {"total": -1}},
        {"$limit": 1},
    ]))
    personal = by_type.get("Personal", 0)
    professional = by_type.get("Professional", 0)
    budget_used = (personal + professional) / MONTHLY_BUDGET * 100 if MONTHLY_BUDGET else 0
    return {
        "totalPersonal": personal,
        "totalProfessional": professional,
        "budget": MONTHLY_BUDGET,
        "budgetUsedPercent": round(budget_used),
        "highestCategory": highest[0]["_id"] if highest else None,
    }


@router.get("/over-time")
def expenses_over_time(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    timeFrame: Literal["daily", "monthly", "yearly"] = "monthly",
    current=Depends(get_user_from_token),
):
    match = window_match(current["id"], startDate, endDate)
    rows = db["expenses"].aggregate([
        {"$match": match},
        {"$group": {"_id": {**period_group(timeFrame), "type": "$type"}, "total": {"$sum": "$amount"}}},
    ])
    buckets: Dict[str, Dict[str, float]] = {}
    for r in rows:
        key = period_key(r["_id"], timeFrame)
        bucket = buckets.setdefault(key, {"personal": 0, "professional": 0})
        bucket[r["_id"]["type"].lower()] += r["total"]
    return [{"period": key, **buckets[key]} for key in sorted(buckets)]


@router.get("/categories")
def expense_categories(startDate: Optional[str] = None, endDate: Optional[str] = None, current=Depends(get_user_from_token)):
    match = window_match(current["id"], startDate, endDate)
    rows = db["expenses"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$category", "value": {"$sum": "$amount"}}},
        {"$sort": {"value": -1}},
    ])
    return [{"name": r["_id"], "value": r["value"]} for r in rows]


@router.get("/transactions")
def recent_transactions(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    sortBy: Literal["date", "amount"] = "date",
    order: Literal["asc", "desc"] = "desc",
    category: Optional[ExpenseCategory] = None,
    type: Optional[ExpenseType] = None,
    limit: int = Query(10, ge=1, le=100),
    current=Depends(get_user_from_token),
):
    q = window_match(current["id"], startDate, endDate)
    if category:
        q["category"] = category
    if type:
        q["type"] = type
    docs = db["expenses"].find(q).sort(sortBy, -1 if order == "desc" else 1).limit(limit)
    return [serialize_expense(d) for d in docs]


# -------------------- CRUD --------------------

@router.post("", status_code=201)
def create_expense(payload: ExpenseRequest, current=Depends(get_user_from_token)):
    expense = ExpenseSchema(**{**payload.model_dump(), "date": start_of_day(payload.date)}, createdBy=current["id"])
    expense_id = create_document("expenses", expense)
    return serialize_expense(db["expenses"].find_one({"_id": ObjectId(expense_id)}))


@router.get("")
def list_expenses(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    current=Depends(get_user_from_token),
):
    q = window_match(current["id"], startDate, endDate)
    docs = db["expenses"].find(q).sort("date", -1).skip((page - 1) * limit).limit(limit)
    return [serialize_expense(d) for d in docs]


@router.get("/{expense_id}")
def get_expense(expense_id: str, current=Depends(get_user_from_token)):
    doc = db["expenses"].find_one(_owned(expense_id, current))
    if not doc:
        raise NotFoundError("Expense not found")
    return serialize_expense(doc)


@router.put("/{expense_id}")
def update_expense(expense_id: str, payload: ExpenseRequest, current=Depends(get_user_from_token)):
    update = {**payload.model_dump(), "date": start_of_day(payload.date), "updated_at": datetime.now(timezone.utc)}
    res = db["expenses"].update_one(_owned(expense_id, current), {"$set": update})
    if res.matched_count == 0:
        raise NotFoundError("Expense not found")
    return serialize_expense(db["expenses"].find_one({"_id": oid(expense_id)}))


@router.delete("/{expense_id}")
def delete_expense(expense_id: str, current=Depends(get_user_from_token)):
    res = db["expenses"].delete_one(_owned(expense_id, current))
    if res.deleted_count == 0:
        raise NotFoundError("Expense not found")
    logger.info("Expense %s deleted", expense_id)
    return {"success": True, "message": "Expense deleted"}
