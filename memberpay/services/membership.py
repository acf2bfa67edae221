"""Membership activation, triggered by a completed membership payment."""
import calendar
from datetime import date
from typing import Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from ..errors import NotFoundError
from ..models import Member, MembershipType
from ..observability import membership_activations_total
from .sequence import SequenceGenerator, membership_number_prefix

logger = structlog.get_logger(__name__)


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the last day of a shorter month."""
    month_index = start.month - 1 + months
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_expiry(membership_type: MembershipType, today: Optional[date] = None) -> Optional[date]:
    """``today + duration``, or ``None`` for lifetime memberships."""
    if membership_type.is_lifetime:
        return None
    today = today or date.today()
    return add_months(today, membership_type.duration_months)


class MembershipActivator:
    """Sets a member active with a freshly computed expiry.

    Does not commit: it runs inside the transaction that completed the payment
    so both land together or not at all.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def activate(self, member_id: int, membership_type_id: int, today: Optional[date] = None) -> Optional[Member]:
        membership_type = await self.session.get(MembershipType, membership_type_id)
        if membership_type is None:
            logger.warning(
                "membership.unknown_type", member_id=member_id, membership_type_id=membership_type_id
            )
            return None

        member = await self.session.get(Member, member_id, populate_existing=True)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")

        member.membership_type_id = membership_type.id
        member.status = "active"
        member.expiry_date = compute_expiry(membership_type, today)
        if not member.membership_number:
            member.membership_number = await SequenceGenerator(self.session).next(membership_number_prefix())
        self.session.add(member)
        await self.session.flush()

        membership_activations_total.inc()
        logger.info(
            "membership.activated",
            member_id=member_id,
            membership_type_id=membership_type_id,
            expiry_date=member.expiry_date.isoformat() if member.expiry_date else None,
            membership_number=member.membership_number,
        )
        return member
