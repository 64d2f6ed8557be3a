"""
One-time verification codes for withdrawals.

Codes are 6 random digits, expire after VERIFICATION_CODE_TTL_MINUTES and
are bound to one user and one withdrawal. Only a SHA-256 hash is stored.
Consumption is a single conditional UPDATE, so of two concurrent
submissions of the same code exactly one succeeds.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import VerificationCode, VerificationCodeType, utcnow
from utils.ledger_exceptions import InvalidCode

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    ttl_minutes: int


class VerificationCodeService:
    """Issue and consume withdrawal verification codes inside the caller's transaction"""

    def __init__(self, ttl_minutes: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl_minutes = ttl_minutes or Config.VERIFICATION_CODE_TTL_MINUTES
        self._clock = clock

    @staticmethod
    def generate_code() -> str:
        """Generate 6-digit OTP code"""
        return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))

    @staticmethod
    def hash_code(code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()

    def issue_code(
        self,
        session: Session,
        user_id: int,
        withdrawal_id: str,
        code_type: VerificationCodeType = VerificationCodeType.WITHDRAWAL,
    ) -> IssuedCode:
        """
        Create a fresh code for withdrawal_id. Earlier unused codes for the same
        withdrawal stop being accepted.
        """
        now = self._clock()
        session.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.withdrawal_id == withdrawal_id,
                VerificationCode.code_type == code_type.value,
                VerificationCode.used.is_(False),
                VerificationCode.expires_at > now,
            )
            .values(expires_at=now)
        )

        code = self.generate_code()
        expires_at = now + timedelta(minutes=self.ttl_minutes)
        session.add(VerificationCode(
            user_id=user_id,
            code_hash=self.hash_code(code),
            code_type=code_type.value,
            withdrawal_id=withdrawal_id,
            extra_data={"withdrawal_id": withdrawal_id},
            expires_at=expires_at,
            used=False,
            created_at=now,
        ))
        session.flush()

        logger.info(f"🔐 Verification code issued for withdrawal {withdrawal_id} (user {user_id})")
        return IssuedCode(code=code, expires_at=expires_at, ttl_minutes=self.ttl_minutes)

    def consume_code(
        self,
        session: Session,
        user_id: int,
        withdrawal_id: str,
        code: str,
        code_type: VerificationCodeType = VerificationCodeType.WITHDRAWAL,
    ) -> VerificationCode:
        """Mark the matching code used. Raises InvalidCode if it is wrong, expired, foreign or spent."""
        if not code or not code.isdigit() or len(code) != CODE_LENGTH:
            raise InvalidCode("Invalid verification code format")

        now = self._clock()
        code_hash = self.hash_code(code)
        candidates = session.execute(
            select(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.withdrawal_id == withdrawal_id,
                VerificationCode.code_type == code_type.value,
            )
            .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
        ).scalars().all()

        record = next((c for c in candidates if secrets.compare_digest(c.code_hash, code_hash)), None)
        if record is None:
            logger.warning(f"⚠️ Wrong verification code for withdrawal {withdrawal_id} (user {user_id})")
            raise InvalidCode("Invalid verification code")
        if record.used:
            raise InvalidCode("Verification code has already been used")
        if record.expires_at <= now:
            raise InvalidCode("Verification code has expired")

        result = session.execute(
            update(VerificationCode)
            .where(VerificationCode.id == record.id, VerificationCode.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another request consumed it between our read and this update
            raise InvalidCode("Verification code has already been used")

        logger.info(f"✅ Verification code consumed for withdrawal {withdrawal_id}")
        return record
