"""
Runtime configuration read from the environment (.env supported).
"""

from pathlib import Path
from typing import Dict, List
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _roles(name: str, default: str) -> List[str]:
    raw = os.environ.get(name, default)
    return [role.strip().lower() for role in raw.split(",") if role.strip()]


# MongoDB connection (replica set required for transactions)
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
DB_NAME = os.environ.get('DB_NAME', 'procurement_lifecycle')

# JWT Configuration
JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "change-me-in-production")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Money
BASE_CURRENCY = os.environ.get("BASE_CURRENCY", "PEN")
_default_rate = os.environ.get("DEFAULT_EXCHANGE_RATE", "").strip()
DEFAULT_EXCHANGE_RATE = _default_rate or None

# Role groups gating transitions, rollbacks, payments and deletes
ROLE_GROUPS: Dict[str, List[str]] = {
    "approvers": _roles("APPROVER_ROLES", "admin,manager"),
    "rollback": _roles("ROLLBACK_ROLES", "admin,manager,logistics"),
    "logistics": _roles("LOGISTICS_ROLES", "admin,manager,logistics"),
    "payments": _roles("PAYMENT_ROLES", "admin,manager,finance"),
    "delete": _roles("DELETE_ROLES", "admin,manager"),
}
