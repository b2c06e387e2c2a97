"""One-time codes gating attendance writes, and the admission tokens they yield.

Codes live in the shared database, one row per participant identity: short
TTL, single use, bound to the participant and the session they were issued
for. Any worker process can spend a code another one issued.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import config
from errors import CodeAlreadyUsed, CodeExpired, CodeMismatch, InvalidAdmission, storage_guard
from models import OneTimeCode, normalize_participant

logger = logging.getLogger(__name__)


class IssuedCode(BaseModel):
    code: str
    session_id: int
    participant: str
    issued_at: datetime
    expires_at: datetime
    used_at: datetime | None = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        config.ADMISSION_SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_admission_token(session_id: int, participant: str, now: datetime) -> str:
    iat = int(now.timestamp())
    payload = {
        "sid": session_id,
        "sub": participant,
        "iat": iat,
        "exp": iat + config.ADMISSION_TOKEN_TTL_SECONDS,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64)}"


def decode_admission_token(token: str, now: datetime) -> dict[str, Any]:
    if not token or "." not in token:
        raise InvalidAdmission("Malformed admission token")

    payload_b64, signature = token.split(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64)):
        raise InvalidAdmission("Admission token signature mismatch")

    try:
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidAdmission("Unreadable admission token") from e

    if not isinstance(payload, dict):
        raise InvalidAdmission("Unreadable admission token")
    if not isinstance(payload.get("sid"), int) or not isinstance(payload.get("sub"), str):
        raise InvalidAdmission("Admission token is missing claims")
    if not isinstance(payload.get("exp"), int) or payload["exp"] < int(now.timestamp()):
        raise InvalidAdmission("Admission token expired")
    return payload


def _find_code(session: Session, participant: str) -> OneTimeCode | None:
    # Another worker may have spent or reissued the row since this session loaded it
    return session.exec(
        select(OneTimeCode)
        .where(OneTimeCode.participant == participant)
        .execution_options(populate_existing=True)
    ).first()


def _to_issued(row: OneTimeCode) -> IssuedCode:
    return IssuedCode(
        code=row.code,
        session_id=row.session_id,
        participant=row.participant,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        used_at=row.used_at,
    )


class OneTimeCodeGate:
    def __init__(self, ttl_seconds: int = config.OTP_TTL_SECONDS, length: int = config.OTP_LENGTH):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.length = length

    def _reissue(
        self, session: Session, row: OneTimeCode, code: str, session_id: int, now: datetime
    ) -> IssuedCode:
        row.code = code
        row.session_id = session_id
        row.issued_at = now
        row.expires_at = now + self.ttl
        row.used_at = None
        session.add(row)
        session.commit()
        session.refresh(row)
        logger.info(f"Reissued one-time code for {row.participant} on session {session_id}")
        return _to_issued(row)

    def issue(
        self, session: Session, session_id: int, participant: str, now: datetime | None = None
    ) -> IssuedCode:
        """Issue a fresh code, replacing any earlier one for this participant."""
        now = now or config.local_now()
        participant = normalize_participant(participant)
        code = "".join(secrets.choice("0123456789") for _ in range(self.length))

        row = _find_code(session, participant)
        if row is not None:
            return self._reissue(session, row, code, session_id, now)

        row = OneTimeCode(
            participant=participant,
            code=code,
            session_id=session_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # Another request issued one first; ours replaces it
            session.rollback()
            row = _find_code(session, participant)
            if row is None:
                raise
            return self._reissue(session, row, code, session_id, now)

        session.refresh(row)
        logger.info(f"Issued one-time code for {participant} on session {session_id}")
        return _to_issued(row)

    def consume(
        self,
        session: Session,
        participant: str,
        code: str,
        now: datetime | None = None,
        session_id: int | None = None,
    ) -> str:
        """Spend a code and return an admission token for the attendance write."""
        now = now or config.local_now()
        participant = normalize_participant(participant)
        candidate = (code or "").strip()

        row = _find_code(session, participant)
        if row is None:
            logger.info(f"Code rejected for {participant}: none issued")
            raise CodeMismatch("No code was issued for this participant")
        matches = hmac.compare_digest(candidate, row.code)
        if row.used_at is not None and matches:
            logger.info(f"Code rejected for {participant}: already used")
            raise CodeAlreadyUsed("This code has already been used")
        if now > row.expires_at:
            logger.info(f"Code rejected for {participant}: expired")
            raise CodeExpired("This code has expired, request a new one")
        if not matches or (session_id is not None and row.session_id != session_id):
            logger.info(f"Code rejected for {participant}: mismatch")
            raise CodeMismatch("Code does not match this participant or session")

        issued_for = row.session_id
        result = session.exec(
            update(OneTimeCode)
            .where(OneTimeCode.id == row.id)
            .where(OneTimeCode.code == candidate)
            .where(OneTimeCode.used_at.is_(None))
            .values(used_at=now)
        )
        session.commit()
        if result.rowcount == 0:
            # Spent or reissued by a concurrent request
            session.refresh(row)
            if row.used_at is not None and hmac.compare_digest(candidate, row.code):
                logger.info(f"Code rejected for {participant}: already used")
                raise CodeAlreadyUsed("This code has already been used")
            logger.info(f"Code rejected for {participant}: replaced")
            raise CodeMismatch("Code does not match this participant or session")

        logger.info(f"Code consumed for {participant} on session {issued_for}")
        return issue_admission_token(issued_for, participant, now)

    def readmit(
        self,
        session: Session,
        participant: str,
        code: str,
        now: datetime | None = None,
        session_id: int | None = None,
    ) -> str:
        """Admission token for a matching code that is already spent but still within its TTL.

        Covers a request racing the one that spent the code before its
        attendance record is committed; the record's unique constraint
        decides which write lands.
        """
        now = now or config.local_now()
        participant = normalize_participant(participant)
        candidate = (code or "").strip()

        row = _find_code(session, participant)
        if (
            row is None
            or row.used_at is None
            or not hmac.compare_digest(candidate, row.code)
            or now > row.expires_at
            or (session_id is not None and row.session_id != session_id)
        ):
            raise CodeAlreadyUsed("This code has already been used")
        logger.info(f"Readmitted {participant} on session {row.session_id} with a spent code")
        return issue_admission_token(row.session_id, participant, now)


@storage_guard
def purge_stale_codes(
    session: Session,
    now: datetime | None = None,
    retention_seconds: int = config.OTP_RETENTION_SECONDS,
) -> int:
    """Drop codes that expired more than `retention_seconds` ago."""
    now = now or config.local_now()
    result = session.exec(
        delete(OneTimeCode).where(OneTimeCode.expires_at < now - timedelta(seconds=retention_seconds))
    )
    session.commit()
    count = result.rowcount or 0
    if count:
        logger.info(f"Purged {count} stale one-time code(s)")
    return count
