"""Period-scoped, human readable identifiers (invoice and membership numbers).

Each prefix owns a row in ``invoice_sequences``. ``next()`` makes sure the row
exists and then bumps it with a single ``UPDATE ... RETURNING``, so the value a
caller receives is decided by the database row lock rather than by reading the
highest existing identifier. Concurrent callers on the same prefix serialise
on that row and never see the same value.

The bump runs inside the caller's transaction: if the surrounding insert rolls
back, so does the counter, which keeps the sequence free of gaps.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from ..config import settings
from ..models import InvoiceSequence, utcnow

SEQUENCE_WIDTH = 4


def invoice_prefix(when: Optional[datetime] = None) -> str:
    when = when or utcnow()
    return f"{settings.invoice_prefix}{when:%Y%m}-"


def membership_number_prefix(when: Optional[datetime] = None) -> str:
    when = when or utcnow()
    return f"{settings.membership_number_prefix}{when:%Y}-"


def _insert_if_absent(dialect_name: str, prefix: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"sequence generation is not supported on {dialect_name}")
    return (
        insert(InvoiceSequence)
        .values(prefix=prefix, last_value=0)
        .on_conflict_do_nothing(index_elements=["prefix"])
    )


class SequenceGenerator:
    def __init__(self, session: AsyncSession, width: int = SEQUENCE_WIDTH):
        self.session = session
        self.width = width

    async def next_value(self, prefix: str) -> int:
        dialect_name = self.session.get_bind().dialect.name
        await self.session.exec(_insert_if_absent(dialect_name, prefix))
        bump = (
            update(InvoiceSequence)
            .where(InvoiceSequence.prefix == prefix)
            .values(last_value=InvoiceSequence.last_value + 1)
            .returning(InvoiceSequence.last_value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(bump)
        return result.scalar_one()

    async def next(self, prefix: str) -> str:
        value = await self.next_value(prefix)
        return f"{prefix}{value:0{self.width}d}"
