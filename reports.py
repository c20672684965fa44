"""
Expense reports

Groups an owner's expenses inside an inclusive date window by category,
calendar month or calendar year and sums the amounts per group.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from database import db
from errors import NoDataError, ValidationError
from utils import start_of_day

REPORT_MODES = ("category", "monthly", "yearly")


@dataclass(frozen=True)
class ReportGroup:
    key: str
    total: float


def _pipeline(match: Dict[str, Any], mode: str) -> List[Dict[str, Any]]:
    if mode == "category":
        return [
            {"$match": match},
            {"$group": {"_id": "$category", "total": {"$sum": "$amount"}}},
            {"$sort": {"total": -1, "_id": 1}},
        ]
    if mode == "monthly":
        return [
            {"$match": match},
            {"$group": {"_id": {"y": {"$year": "$date"}, "m": {"$month": "$date"}}, "total": {"$sum": "$amount"}}},
            {"$sort": {"_id.y": 1, "_id.m": 1}},
        ]
    return [
        {"$match": match},
        {"$group": {"_id": {"$year": "$date"}, "total": {"$sum": "$amount"}}},
        {"$sort": {"_id": 1}},
    ]


def _group_key(group_id: Any, mode: str) -> str:
    if mode == "monthly":
        return f"{group_id['y']}-{group_id['m']:02d}"
    return str(group_id)


def generate_report(start: date, end: date, mode: str, owner: Optional[str] = None) -> List[ReportGroup]:
    """
    Raises:
        ValidationError: unknown mode or start after end
        NoDataError: no expense dated inside the window
    """
    if mode not in REPORT_MODES:
        raise ValidationError(
            "Invalid report type. Valid values: category, monthly, yearly",
            [f"type: {mode}"],
        )
    if start > end:
        raise ValidationError("Start date must be before end date", [f"startDate: {start}", f"endDate: {end}"])

    match: Dict[str, Any] = {"date": {"$gte": start_of_day(start), "$lt": start_of_day(end + timedelta(days=1))}}
    if owner is not None:
        match["createdBy"] = owner

    rows = list(db["expenses"].aggregate(_pipeline(match, mode)))
    if not rows:
        raise NoDataError("No expenses found in the selected date range")
    return [ReportGroup(key=_group_key(r["_id"], mode), total=r["total"]) for r in rows]
