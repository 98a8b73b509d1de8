"""
FINANCIAL INVARIANT VALIDATOR

Enforces account constraints before a payment or recalculation commits:
1. total >= 0
2. paid >= 0
3. paid <= total
4. pending == max(0, total - paid)

Blocks transactions if violated.
"""

from decimal import Decimal
from typing import Dict, Any, List
import logging

from procurement_backend.core.errors import InvariantViolationError
from procurement_backend.core.financial_precision import round_financial, to_float, ZERO

logger = logging.getLogger(__name__)


class FinancialInvariantValidator:
    """
    Centralized account invariant enforcement.

    Used after EVERY monetary mutation of an account, inside its transaction.
    """

    @staticmethod
    def collect_account_violations(account: Dict[str, Any]) -> List[dict]:
        total = round_financial(account.get("total"))
        paid = round_financial(account.get("paid"))
        pending = round_financial(account.get("pending"))

        violations = []

        # INVARIANT 1: total >= 0
        if total < ZERO:
            violations.append({
                "type": "NEGATIVE_TOTAL",
                "message": f"total ({to_float(total)}) is negative",
                "total": to_float(total)
            })

        # INVARIANT 2: paid >= 0
        if paid < ZERO:
            violations.append({
                "type": "NEGATIVE_PAID",
                "message": f"paid ({to_float(paid)}) is negative",
                "paid": to_float(paid)
            })

        # INVARIANT 3: paid <= total
        if paid > total:
            violations.append({
                "type": "OVER_PAYMENT",
                "message": f"paid ({to_float(paid)}) exceeds total ({to_float(total)})",
                "paid": to_float(paid),
                "total": to_float(total)
            })

        # INVARIANT 4: pending mirrors the balance
        expected_pending = max(ZERO, total - paid)
        if pending != expected_pending:
            violations.append({
                "type": "PENDING_MISMATCH",
                "message": f"pending ({to_float(pending)}) should be {to_float(expected_pending)}",
                "pending": to_float(pending),
                "expected_pending": to_float(expected_pending)
            })

        return violations

    def validate_account(self, kind: str, account: Dict[str, Any]) -> bool:
        """
        Validate all invariants of an account document.

        Raises InvariantViolationError if any constraint violated.
        Returns True if all constraints pass.
        """
        violations = self.collect_account_violations(account)

        # If violations found, raise error with ALL violations
        if violations:
            raise InvariantViolationError(
                violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
                message="Financial invariant violation(s) detected",
                details={
                    "kind": kind,
                    "account_id": str(account.get("_id")),
                    "violations": violations
                }
            )

        logger.debug(f"Invariants validated for {kind}:{account.get('_id')}")
        return True


def account_state_for(paid: Decimal, total: Decimal) -> str:
    """Balance-driven account state, compared at storage precision."""
    paid = round_financial(paid)
    total = round_financial(total)
    if paid <= ZERO:
        return "pending"
    if paid < total:
        return "partial"
    return "paid"
