"""
Human-readable record identifiers: PREFIX + YYYYMMDD + 6-digit daily sequence.

The counter row is locked for the rest of the caller's transaction, so two
writers cannot draw the same sequence number.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import IdCounter, utcnow

logger = logging.getLogger(__name__)

DEPOSIT_PREFIX = "DEP"
WITHDRAWAL_PREFIX = "WD"


def generate_daily_id(session: Session, prefix: str, now: Optional[datetime] = None) -> str:
    """Draw the next identifier for prefix inside the caller's transaction"""
    date_str = (now or utcnow()).strftime("%Y%m%d")

    counter = session.execute(
        select(IdCounter).where(IdCounter.prefix == prefix).with_for_update()
    ).scalar_one_or_none()

    if counter is None:
        counter = IdCounter(prefix=prefix, date=date_str, last_value=0)
        session.add(counter)

    if counter.date != date_str:
        # New day, sequence restarts
        counter.date = date_str
        counter.last_value = 0

    counter.last_value += 1
    session.flush()

    return f"{prefix}{date_str}{counter.last_value:06d}"


def generate_deposit_id(session: Session, now: Optional[datetime] = None) -> str:
    return generate_daily_id(session, DEPOSIT_PREFIX, now)


def generate_withdrawal_id(session: Session, now: Optional[datetime] = None) -> str:
    return generate_daily_id(session, WITHDRAWAL_PREFIX, now)
