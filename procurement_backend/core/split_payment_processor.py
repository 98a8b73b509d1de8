"""
SPLIT PAYMENT PROCESSOR

Records payments against an account (payable, receivable or purchase order)
and recomputes its balance.

LOCKED FORMULAS:
- withholding = round2(gross * pct / 100)
- net = gross - withholding
- paid = sum(payments), pending = max(0, total - paid)
- state = pending (paid == 0) | partial (0 < paid < total) | paid (paid >= total)

TRANSACTION: payments, balance, state and audit commit together or not at all.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from procurement_backend.audit_service import AuditService
from procurement_backend.core.entities import (
    ACCOUNT_STATE_FIELDS,
    STATE_FIELD,
    EntityKind,
    collection_for,
    parse_kind,
    parse_object_id,
)
from procurement_backend.core.errors import (
    ConflictError,
    InvalidRequestError,
    LifecycleError,
    NotFoundError,
)
from procurement_backend.core.financial_precision import (
    FinancialPrecisionError,
    round_financial,
    split_withholding,
    to_decimal,
    to_float,
    validate_positive,
    ZERO,
)
from procurement_backend.core.invariant_validator import (
    FinancialInvariantValidator,
    account_state_for,
)

logger = logging.getLogger(__name__)

# Accounts in these states accept no further payments
CLOSED_ACCOUNT_STATES = frozenset({"voided", "cancelled"})


class SplitPaymentProcessor:
    """
    Payment recording with withholding ("detracción") splits.

    A gross amount with a withholding percentage becomes two payment rows:
    the withheld part (is_withholding=True) and the net part. Without a
    percentage a single row of the gross amount is written.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit: AuditService
    ):
        self.client = client
        self.db = db
        self.audit = audit
        self.invariant_validator = FinancialInvariantValidator()

    @staticmethod
    def build_split(gross_amount, withholding_pct=None) -> List[Dict[str, Any]]:
        """
        Payment parts for a gross amount.

        Raises InvalidRequestError for a non-positive gross or a percentage
        outside (0, 100).
        """
        try:
            validate_positive(gross_amount, "gross_amount")
            if withholding_pct is None or to_decimal(withholding_pct) == ZERO:
                return [{
                    "amount": round_financial(gross_amount),
                    "is_withholding": False,
                    "withholding_pct": None,
                }]
            split = split_withholding(gross_amount, withholding_pct)
        except FinancialPrecisionError as e:
            raise InvalidRequestError(str(e))

        pct = to_float(withholding_pct)
        return [
            {"amount": split["withholding_amount"], "is_withholding": True, "withholding_pct": pct},
            {"amount": split["net_amount"], "is_withholding": False, "withholding_pct": pct},
        ]

    async def _sum_payments(self, kind: EntityKind, account_id: str, session):
        paid = ZERO
        cursor = self.db.payments.find(
            {"account_kind": kind.value, "account_id": account_id},
            session=session
        )
        async for payment in cursor:
            paid += to_decimal(payment.get("amount", 0))
        return paid

    async def record_payment(
        self,
        account_kind,
        account_id: str,
        gross_amount,
        actor: Dict[str, Any],
        withholding_pct=None,
        method: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        reference: Optional[str] = None,
        withholding_code: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a (possibly split) payment against an account.

        Returns {payments: [...], account: {...}} after commit.
        """
        kind = parse_kind(account_kind)
        state_field = ACCOUNT_STATE_FIELDS.get(kind)
        if state_field is None:
            raise InvalidRequestError(
                f"{kind.value} does not accept payments",
                {"allowed": [k.value for k in ACCOUNT_STATE_FIELDS]}
            )
        oid = parse_object_id(kind, account_id)
        parts = self.build_split(gross_amount, withholding_pct)
        gross = round_financial(gross_amount)

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                try:
                    collection = collection_for(self.db, kind)
                    account = await collection.find_one({"_id": oid}, session=session)
                    if not account:
                        raise NotFoundError(kind.value, str(account_id))

                    lifecycle_state = account.get(STATE_FIELD)
                    if lifecycle_state in CLOSED_ACCOUNT_STATES:
                        raise ConflictError(
                            f"{kind.value} {account_id} is {lifecycle_state} and accepts no payments"
                        )
                    if kind == EntityKind.PURCHASE_ORDER and lifecycle_state == "draft":
                        raise InvalidRequestError(
                            f"purchase_order {account_id} must be approved before it is paid"
                        )

                    total = round_financial(account.get("total"))
                    paid_before = await self._sum_payments(kind, str(oid), session)
                    pending_before = max(ZERO, total - paid_before)
                    if gross > pending_before:
                        raise InvalidRequestError(
                            f"Payment of {to_float(gross)} exceeds pending balance "
                            f"{to_float(pending_before)} on {kind.value} {account_id}",
                            {"gross_amount": to_float(gross), "pending": to_float(pending_before)}
                        )

                    now = datetime.utcnow()
                    payments = []
                    for part in parts:
                        payment_doc = {
                            "account_kind": kind.value,
                            "account_id": str(oid),
                            "amount": to_float(part["amount"]),
                            "is_withholding": part["is_withholding"],
                            "withholding_pct": part["withholding_pct"],
                            "withholding_code": withholding_code if part["is_withholding"] else None,
                            "paid_at": paid_at or now,
                            "method": method,
                            "reference": reference,
                            "estado": "registered",
                            "created_by": actor.get("user_id"),
                            "created_at": now
                        }
                        result = await self.db.payments.insert_one(payment_doc, session=session)
                        payment_doc["_id"] = result.inserted_id
                        payments.append(payment_doc)

                    paid = await self._sum_payments(kind, str(oid), session)
                    pending = max(ZERO, total - paid)
                    previous_state = account.get(state_field)
                    new_state = account_state_for(paid, total)

                    update = {
                        "paid": to_float(paid),
                        "pending": to_float(pending),
                        state_field: new_state,
                        "updated_at": now
                    }
                    if new_state == "partial" and not account.get("first_payment_at"):
                        update["first_payment_at"] = now
                    if new_state == "paid":
                        update["settled_at"] = now

                    self.invariant_validator.validate_account(
                        kind.value, {"_id": oid, "total": total, **update}
                    )

                    await collection.update_one({"_id": oid}, {"$set": update}, session=session)
                    account.update(update)

                    event = self.audit.build_event(
                        kind,
                        account,
                        "payment_recorded",
                        f"Payment of {to_float(gross)} recorded; {previous_state} -> {new_state}",
                        actor.get("user_id"),
                        metadata={
                            "from": previous_state,
                            "to": new_state,
                            "gross_amount": to_float(gross),
                            "withholding_pct": to_float(withholding_pct) if withholding_pct else None,
                            "payment_ids": [str(p["_id"]) for p in payments],
                            "paid": to_float(paid),
                            "pending": to_float(pending)
                        }
                    )
                    await self.audit.record(event, session)

                    logger.info(
                        f"[PAYMENT] {kind.value}:{oid} +{to_float(gross)} in {len(payments)} part(s); "
                        f"paid={to_float(paid)} pending={to_float(pending)} state={new_state}"
                    )
                    return {"payments": payments, "account": account}

                except LifecycleError:
                    raise
                except Exception as e:
                    logger.error(f"[TRANSACTION ERROR] Payment on {kind.value}:{account_id}: {str(e)}")
                    raise
