"""
Party balance

Bills reference their party only by a normalized name string, so the
balance lookup matches names by pattern: exact (anchored) or substring,
always case-insensitive and with the user's input escaped.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from database import db
from errors import ValidationError
from utils import escape_regex

logger = logging.getLogger(__name__)


@dataclass
class PartyBalance:
    found: bool
    total_balance: float = 0.0
    latest_record: Optional[Dict[str, Any]] = None
    matched_names: List[str] = field(default_factory=list)


def party_name_pattern(party_name: str, exact: bool) -> str:
    escaped = escape_regex(party_name.strip().lower())
    return f"^{escaped}$" if exact else escaped


def compute_party_balance(party_name: str, exact: bool = False, owner: Optional[str] = None) -> PartyBalance:
    if not party_name or not party_name.strip():
        raise ValidationError("Party name is required", ["partyName: missing"])

    match: Dict[str, Any] = {"partyName": {"$regex": party_name_pattern(party_name, exact), "$options": "i"}}
    if owner is not None:
        match["createdBy"] = owner

    latest = db["bills"].find_one(match, sort=[("date", -1), ("serialNumber", -1)])
    if latest is None:
        return PartyBalance(found=False)

    totals = list(db["bills"].aggregate([
        {"$match": {**match, "status": {"$ne": "paid"}}},
        {"$group": {"_id": None, "totalBalance": {"$sum": "$balance"}}},
    ]))
    total_balance = totals[0]["totalBalance"] if totals else 0.0
    matched_names = sorted(db["bills"].distinct("partyName", match))

    logger.debug("Balance for %r (exact=%s): %s across %s", party_name, exact, total_balance, matched_names)
    return PartyBalance(
        found=True,
        total_balance=total_balance,
        latest_record=latest,
        matched_names=matched_names,
    )
