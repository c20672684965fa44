import math
import os
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pydantic
from bson import ObjectId

from errors import ValidationError

BUSINESS_TIMEZONE = ZoneInfo(os.getenv("BUSINESS_TIMEZONE", "Asia/Kolkata"))


def oid(obj_id: str) -> ObjectId:
    if not ObjectId.is_valid(obj_id or ""):
        raise ValidationError("Invalid ID", [f"'{obj_id}' is not a valid id"])
    return ObjectId(obj_id)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


def day_string(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else ""


def escape_regex(text: str) -> str:
    return re.escape(text)


def to_utc_naive(value: datetime) -> datetime:
    """Mongo hands back naive UTC datetimes, so store them that way too."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min)


def parse_day(value: Optional[str], field: str) -> date:
    """Parse an ISO date (YYYY-MM-DD) within a realistic year range."""
    if not value:
        raise ValidationError(f"{field} is required", [f"{field}: missing"])
    try:
        if len(value) == 10:
            parsed = date.fromisoformat(value)
        else:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError("Invalid date format. Use ISO format (YYYY-MM-DD)", [f"{field}: {value}"])
    if parsed.year < 2000 or parsed.year > date.today().year + 5:
        raise ValidationError("Date out of supported range", [f"{field}: {value}"])
    return parsed


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


# -------------------- Time buckets --------------------

def period_group(time_frame: str, field: str = "$date") -> Dict[str, Any]:
    """Aggregation _id splitting a date field into daily/monthly/yearly parts."""
    group = {"y": {"$year": field}}
    if time_frame != "yearly":
        group["m"] = {"$month": field}
    if time_frame == "daily":
        group["d"] = {"$dayOfMonth": field}
    return group


def period_key(group_id: Dict[str, int], time_frame: str) -> str:
    if time_frame == "yearly":
        return f"{group_id['y']}"
    if time_frame == "monthly":
        return f"{group_id['y']}-{group_id['m']:02d}"
    return f"{group_id['y']}-{group_id['m']:02d}-{group_id['d']:02d}"


def period_keys(start: date, end: date, time_frame: str) -> List[str]:
    """Every bucket label between start and end, inclusive."""
    keys = []
    if time_frame == "yearly":
        keys = [f"{year}" for year in range(start.year, end.year + 1)]
    elif time_frame == "monthly":
        y, m = start.year, start.month
        while (y, m) <= (end.year, end.month):
            keys.append(f"{y}-{m:02d}")
            y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    else:
        day = start
        while day <= end:
            keys.append(day.isoformat())
            day += timedelta(days=1)
    return keys


def validate_model(model_cls, **fields) -> Dict[str, Any]:
    """Build a stored-schema document, turning pydantic errors into ValidationError."""
    try:
        return model_cls(**fields).model_dump()
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Validation failed",
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )
