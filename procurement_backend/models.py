from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============================================
# ACTOR
# ============================================
class Actor(BaseModel):
    user_id: str
    role: str

    def as_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role}


# ============================================
# STATE CHANGE REQUESTS
# ============================================
class TransitionRequest(BaseModel):
    target: str
    reason: Optional[str] = None


class RollbackRequest(BaseModel):
    target: str
    reason: Optional[str] = None


# ============================================
# DEPENDENCY CHECKS
# ============================================
class Blocker(BaseModel):
    kind: str
    id: str
    estado: Optional[str] = None
    depth: int = 1
    via: Optional[str] = None
    reason: str


class DependencyCheckResponse(BaseModel):
    allowed: bool
    blockers: List[Blocker] = []
    message: str


# ============================================
# PAYMENTS
# ============================================
class PaymentCreate(BaseModel):
    gross_amount: float
    withholding_pct: Optional[float] = None
    withholding_code: Optional[str] = None
    method: Optional[str] = None
    reference: Optional[str] = None
    paid_at: Optional[datetime] = None


# ============================================
# RECALCULATION
# ============================================
class RecalculateRequest(BaseModel):
    exchange_rate: Optional[float] = None
