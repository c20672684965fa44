"""
Earning reconciliation

A paid bill or paid work order is mirrored by exactly one earning, keyed by
(source tag, reference id) and always carrying the source's current amount.
Callers pass the paid state before and after their own write together with
the session of the transaction that write runs in, so both land together.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Optional

from database import create_document, db
from errors import ConflictError

logger = logging.getLogger(__name__)

EARNINGS = "earnings"


@dataclass(frozen=True)
class SourceDescriptor:
    kind: Literal["Bill", "Work"]
    reference: str
    tag: str

    def filter(self) -> Dict[str, Any]:
        return {"source": self.tag, "reference": self.reference}


@dataclass(frozen=True)
class PaidState:
    paid: bool
    amount: float = 0.0
    date: Optional[datetime] = None


UNPAID = PaidState(paid=False)


def bill_descriptor(bill: Dict[str, Any]) -> SourceDescriptor:
    return SourceDescriptor("Bill", str(bill["_id"]), f"Bill #{bill['serialNumber']}")


def work_descriptor(work: Dict[str, Any]) -> SourceDescriptor:
    return SourceDescriptor("Work", str(work["_id"]), "Work")


def row_total(row: Dict[str, Any]) -> float:
    if row.get("total") is not None:
        return float(row["total"])
    return float(row.get("quantity", 0)) * float(row.get("rate", 0))


def rows_total(rows: Iterable[Dict[str, Any]]) -> float:
    return sum(row_total(r) for r in rows)


def bill_balance(total: float, previous_balance: float, advance: float, status: str) -> float:
    if status == "paid":
        return 0.0
    return total + previous_balance - advance


def bill_state(bill: Dict[str, Any]) -> PaidState:
    if bill.get("status") != "paid":
        return UNPAID
    return PaidState(True, rows_total(bill.get("rows", [])), bill.get("date"))


def work_state(work: Dict[str, Any]) -> PaidState:
    if not work.get("paid"):
        return UNPAID
    return PaidState(True, float(work["quantity"]) * float(work["rate"]), work.get("dateAndTime"))


def _insert(source: SourceDescriptor, state: PaidState, owner: Optional[str], session) -> str:
    earning = {
        "date": state.date or datetime.now(timezone.utc).replace(tzinfo=None),
        "amount": state.amount,
        "type": "Sales",
        "source": source.tag,
        "reference": source.reference,
        "createdBy": owner,
    }
    return create_document(EARNINGS, earning, session=session)


def reconcile_earning(
    source: SourceDescriptor,
    before: PaidState,
    after: PaidState,
    owner: Optional[str] = None,
    session=None,
) -> Optional[str]:
    """Bring the mirrored earning in line with a paid-state transition.

    Returns the action taken: "created", "updated", "deleted",
    "unchanged", or None when neither side is paid.

    Raises:
        ConflictError: an earning already mirrors a source that was unpaid.
    """
    earnings = db[EARNINGS]

    if not before.paid and not after.paid:
        return None

    if not before.paid and after.paid:
        if earnings.find_one(source.filter(), session=session):
            raise ConflictError(
                f"An earning already exists for {source.tag}",
                [f"reference: {source.reference}"],
            )
        _insert(source, after, owner, session)
        logger.info("Earning created for %s (%s): %.2f", source.tag, source.reference, after.amount)
        return "created"

    if before.paid and not after.paid:
        result = earnings.delete_one(source.filter(), session=session)
        if result.deleted_count:
            logger.info("Earning removed for %s (%s)", source.tag, source.reference)
            return "deleted"
        return None

    existing = earnings.find_one(source.filter(), session=session)
    if existing is None:
        logger.warning("Paid %s (%s) had no earning, recreating it", source.tag, source.reference)
        _insert(source, after, owner, session)
        return "created"
    date = after.date or existing.get("date")
    if existing.get("amount") == after.amount and existing.get("date") == date:
        return "unchanged"
    earnings.update_one(
        {"_id": existing["_id"]},
        {"$set": {"amount": after.amount, "date": date, "updated_at": datetime.now(timezone.utc)}},
        session=session,
    )
    logger.info("Earning updated for %s (%s): %.2f", source.tag, source.reference, after.amount)
    return "updated"
