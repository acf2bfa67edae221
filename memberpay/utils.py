import re
import secrets
from dataclasses import dataclass
from fastapi import Header, HTTPException
from typing import Optional
from .config import settings

ADMIN_ROLES = frozenset({"admin", "super_admin"})


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling, as resolved by the upstream auth layer."""
    member_id: int
    is_admin: bool = False

    def can_access(self, member_id: int) -> bool:
        return self.is_admin or self.member_id == member_id


def require_service_api_key(x_api_key: Optional[str] = Header(default=None)):
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.service_api_key):
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True


def get_caller(
    x_member_id: Optional[int] = Header(default=None),
    x_member_role: Optional[str] = Header(default=None),
) -> CallerIdentity:
    if x_member_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CallerIdentity(
        member_id=x_member_id,
        is_admin=(x_member_role or "").lower() in ADMIN_ROLES,
    )


def normalize_phone_number(phone: str) -> str:
    """Coerce a Kenyan mobile number into the 2547XXXXXXXX form M-Pesa expects."""
    digits = re.sub(r"[^0-9]", "", phone or "")
    if digits.startswith("0"):
        return "254" + digits[1:]
    return digits
