"""
Redirection Engine
Mints disposable redirection codes that stand in for real destinations on shipping
labels, and releases the real destination to the carrier exactly once.

A sender only ever sees the platform hub address with an ATTN line carrying the
code. The real address is stored as Fernet ciphertext and is decrypted when the
carrier scans the parcel and calls the resolution webhook.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from caching.simple_cache import SimpleCache
from config import Config
from models import RedirectionRecord, RedirectionStatus, ShippingDirection, IncidentType
from services.collaborators import CarrierGateway
from utils.datetime_helpers import days_from_now, ensure_naive_datetime, get_naive_utc_now, is_past
from utils.exception_handler import (
    TradeSecurityError,
    RedirectionNotFoundError,
    RedirectionExpiredError,
    AddressIntegrityError,
)
from utils.id_generator import generate_code
from utils.pii_protection import AddressEncryption, PostalAddress
from utils.security_audit import SecurityAuditLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedRedirection:
    """Outcome of a carrier resolution call"""
    code: str
    address: PostalAddress
    trade_id: str
    direction: ShippingDirection
    first_resolution: bool


class RedirectionEngine:
    """Creation, resolution and expiry of redirection records"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        encryption: Optional[AddressEncryption] = None,
        carrier_gateway: Optional[CarrierGateway] = None,
        audit_logger: Optional[SecurityAuditLogger] = None,
        address_cache: Optional[SimpleCache] = None,
    ):
        self.session_factory = session_factory
        self.encryption = encryption or AddressEncryption()
        self.carrier_gateway = carrier_gateway
        self.audit_logger = audit_logger or SecurityAuditLogger(session_factory)
        self.address_cache = address_cache or SimpleCache(
            default_ttl=Config.RESOLVED_ADDRESS_CACHE_TTL, name="resolved_addresses"
        )

    def generate_code(self) -> str:
        return generate_code(Config.REDIRECTION_CODE_PREFIX, Config.REDIRECTION_CODE_SUFFIX_LENGTH)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_redirection(
        self,
        session: Session,
        trade_id: str,
        direction: ShippingDirection,
        real_address: PostalAddress,
        sender_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedirectionRecord:
        """
        Encrypt the real destination and store it behind a fresh unique code.

        Runs inside the caller's transaction. Idempotent per (trade, direction):
        an existing record for the same parcel is returned unchanged.
        """
        existing = (
            session.query(RedirectionRecord)
            .filter(
                RedirectionRecord.trade_id == trade_id,
                RedirectionRecord.direction == direction.value,
            )
            .one_or_none()
        )
        if existing is not None:
            logger.info(f"♻️ REDIRECTION_EXISTS: {existing.redirection_code} for {trade_id}/{direction.value}")
            return existing

        ciphertext = self.encryption.encrypt_address(real_address)
        created_at = ensure_naive_datetime(now) or get_naive_utc_now()
        expires_at = days_from_now(Config.REDIRECTION_EXPIRY_DAYS, created_at)

        max_attempts = max(1, Config.REDIRECTION_CODE_MAX_ATTEMPTS)
        for attempt in range(1, max_attempts + 1):
            code = self.generate_code()
            record = RedirectionRecord(
                redirection_code=code,
                trade_id=trade_id,
                direction=direction.value,
                sender_id=sender_id,
                recipient_id=recipient_id,
                decoy_name=Config.DECOY_HUB_NAME,
                decoy_attention=f"ATTN: {code}",
                decoy_street=Config.DECOY_HUB_STREET,
                decoy_postal_code=Config.DECOY_HUB_POSTAL_CODE,
                decoy_city=Config.DECOY_HUB_CITY,
                decoy_country=Config.DECOY_HUB_COUNTRY,
                encrypted_destination=ciphertext,
                status=RedirectionStatus.PENDING.value,
                created_at=created_at,
                expires_at=expires_at,
            )
            try:
                with session.begin_nested():
                    session.add(record)
            except IntegrityError:
                logger.warning(
                    f"⚠️ REDIRECTION_CODE_COLLISION: attempt {attempt}/{max_attempts} for {trade_id}/{direction.value}"
                )
                continue

            logger.info(
                f"🏷️ REDIRECTION_CREATED: {code} trade={trade_id} direction={direction.value} "
                f"expires={expires_at.isoformat()}"
            )
            return record

        logger.error(f"❌ REDIRECTION_CODE_EXHAUSTED: {trade_id}/{direction.value} after {max_attempts} attempts")
        raise TradeSecurityError(
            f"Could not allocate a unique redirection code for {trade_id} after {max_attempts} attempts"
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_redirection(self, code: str, now: Optional[datetime] = None) -> ResolvedRedirection:
        """
        Release the real destination behind `code` to the carrier.

        The first successful call flips PENDING -> RESOLVED with a compare-and-set
        update and notifies the carrier. Every later call returns the same address
        without notifying again.
        """
        moment = ensure_naive_datetime(now) or get_naive_utc_now()
        session = self.session_factory()
        try:
            record = (
                session.query(RedirectionRecord)
                .filter(RedirectionRecord.redirection_code == code)
                .one_or_none()
            )
            if record is None:
                logger.warning(f"⚠️ REDIRECTION_NOT_FOUND: {code}")
                raise RedirectionNotFoundError(code)

            trade_id = record.trade_id
            direction = ShippingDirection(record.direction)
            ciphertext = record.encrypted_destination

            if record.redirection_status == RedirectionStatus.RESOLVED:
                # Retries are served read-only; a resolved record is never written again
                session.rollback()
                address = self._cached_or_decrypt(code, ciphertext, trade_id)
                logger.info(f"🔁 REDIRECTION_ALREADY_RESOLVED: {code} trade={trade_id}")
                return ResolvedRedirection(code, address, trade_id, direction, first_resolution=False)

            if record.redirection_status == RedirectionStatus.EXPIRED:
                logger.warning(f"⌛ REDIRECTION_EXPIRED: {code} trade={trade_id}")
                raise RedirectionExpiredError(code)

            if is_past(record.expires_at, moment):
                session.execute(
                    update(RedirectionRecord)
                    .where(
                        RedirectionRecord.redirection_code == code,
                        RedirectionRecord.status == RedirectionStatus.PENDING.value,
                    )
                    .values(status=RedirectionStatus.EXPIRED.value)
                )
                session.commit()
                logger.warning(f"⌛ REDIRECTION_EXPIRED: {code} trade={trade_id} passed expiry on lookup")
                raise RedirectionExpiredError(code)

            # Decrypt before flipping so a tampered record stays PENDING
            try:
                address = self.encryption.decrypt_address(ciphertext)
            except AddressIntegrityError:
                session.rollback()
                session.close()
                self._flag_integrity_failure(code, trade_id, "pending")
                raise AddressIntegrityError(code=code)

            result = session.execute(
                update(RedirectionRecord)
                .where(
                    RedirectionRecord.redirection_code == code,
                    RedirectionRecord.status == RedirectionStatus.PENDING.value,
                    RedirectionRecord.expires_at > moment,
                )
                .values(
                    status=RedirectionStatus.RESOLVED.value,
                    resolved_at=moment,
                )
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1

            if not won:
                session.expire_all()
                current = (
                    session.query(RedirectionRecord.status)
                    .filter(RedirectionRecord.redirection_code == code)
                    .scalar()
                )
                if current != RedirectionStatus.RESOLVED.value:
                    session.rollback()
                    logger.warning(f"⌛ REDIRECTION_EXPIRED: {code} expired while resolving")
                    raise RedirectionExpiredError(code)

            session.commit()
        finally:
            session.close()

        if won:
            self.address_cache.set(code, address)
            logger.info(f"✅ REDIRECTION_RESOLVED: {code} trade={trade_id} direction={direction.value}")
            self._notify_carrier(code, address, trade_id, direction)
        else:
            logger.info(f"🔁 REDIRECTION_RESOLVED_CONCURRENTLY: {code} trade={trade_id}")

        return ResolvedRedirection(code, address, trade_id, direction, first_resolution=won)

    def _cached_or_decrypt(self, code: str, ciphertext: str, trade_id: str) -> PostalAddress:
        address = self.address_cache.get(code)
        if address is not None:
            return address

        # Cache lost (restart or TTL); decrypting again has no side effects
        try:
            address = self.encryption.decrypt_address(ciphertext)
        except AddressIntegrityError:
            self._flag_integrity_failure(code, trade_id, "resolved")
            raise AddressIntegrityError(code=code)
        self.address_cache.set(code, address)
        return address

    def _flag_integrity_failure(self, code: str, trade_id: str, status: str) -> None:
        logger.error(f"🚨 REDIRECTION_INTEGRITY_FAILURE: {code} trade={trade_id} status={status} - manual review required")
        self.audit_logger.record_incident(
            IncidentType.ADDRESS_INTEGRITY_FAILURE,
            details={"status": status, "action": "resolve_redirection"},
            redirection_code=code,
            trade_id=trade_id,
        )

    def _notify_carrier(self, code: str, address: PostalAddress, trade_id: str, direction: ShippingDirection) -> None:
        if self.carrier_gateway is None:
            logger.warning(f"⚠️ NO_CARRIER_GATEWAY: {code} resolved without carrier notification")
            return
        try:
            self.carrier_gateway.notify_real_destination(code, address, trade_id, direction.value)
        except Exception as e:
            # The record stays RESOLVED; support re-sends the destination by hand
            logger.error(f"🚨 CARRIER_NOTIFY_FAILED: {code} trade={trade_id}: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_stale_redirections(self, now: Optional[datetime] = None) -> int:
        """Mark every PENDING record past its expiry as EXPIRED"""
        moment = ensure_naive_datetime(now) or get_naive_utc_now()
        session = self.session_factory()
        try:
            result = session.execute(
                update(RedirectionRecord)
                .where(
                    RedirectionRecord.status == RedirectionStatus.PENDING.value,
                    RedirectionRecord.expires_at <= moment,
                )
                .values(status=RedirectionStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            expired = result.rowcount or 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if expired:
            logger.info(f"⌛ REDIRECTIONS_EXPIRED: {expired} codes past expiry")
        return expired

    def void_trade_redirections(self, session: Session, trade_id: str) -> int:
        """Expire the trade's unresolved codes; runs inside the caller's transaction"""
        result = session.execute(
            update(RedirectionRecord)
            .where(
                RedirectionRecord.trade_id == trade_id,
                RedirectionRecord.status == RedirectionStatus.PENDING.value,
            )
            .values(status=RedirectionStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        voided = result.rowcount or 0
        if voided:
            logger.info(f"🗑️ REDIRECTIONS_VOIDED: {voided} codes for cancelled trade {trade_id}")
        return voided

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def get_record(session: Session, code: str) -> RedirectionRecord:
        record = (
            session.query(RedirectionRecord)
            .filter(RedirectionRecord.redirection_code == code)
            .one_or_none()
        )
        if record is None:
            raise RedirectionNotFoundError(code)
        return record

    @staticmethod
    def records_for_trade(session: Session, trade_id: str) -> Dict[ShippingDirection, RedirectionRecord]:
        records = session.query(RedirectionRecord).filter(RedirectionRecord.trade_id == trade_id).all()
        return {ShippingDirection(r.direction): r for r in records}

    @staticmethod
    def shipping_label(record: RedirectionRecord) -> Dict[str, Any]:
        """What the sender prints: the hub address and the code, never the real destination"""
        return {
            "redirection_code": record.redirection_code,
            "shipping_address": record.decoy_address(),
            "label_lines": record.decoy_label_lines(),
            "tracking_url": Config.REDIRECTION_TRACKING_URL.format(code=record.redirection_code),
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            "sender_instructions": [
                "Print the label and stick it on the parcel",
                f"Write {record.redirection_code} clearly on the package",
                "Drop the parcel at any post office or relay point",
                "Keep the deposit receipt and enter the tracking number in the app",
            ],
        }
