"""
PII Protection and Encryption Service
Encrypts real postal addresses so that only ciphertext is ever persisted
"""

import logging
import json
import re
from dataclasses import dataclass, asdict, field
from typing import Dict, Any, List, Optional

from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from config import Config
from utils.exception_handler import AddressValidationError, AddressIntegrityError

logger = logging.getLogger(__name__)

ADDRESS_PAYLOAD_VERSION = 1


@dataclass(frozen=True)
class PostalAddress:
    """Real destination of a parcel; exists in plaintext only in memory"""
    recipient_name: str
    street: str
    postal_code: str
    city: str
    country: str
    additional_info: Optional[str] = None
    phone: Optional[str] = field(default=None, repr=False)

    REQUIRED_FIELDS = ("recipient_name", "street", "postal_code", "city", "country")

    def validate(self) -> "PostalAddress":
        missing = [name for name in self.REQUIRED_FIELDS if not (getattr(self, name) or "").strip()]
        if missing:
            raise AddressValidationError(
                f"Incomplete postal address, missing: {', '.join(missing)}", field=missing[0]
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostalAddress":
        return cls(
            recipient_name=data["recipient_name"],
            street=data["street"],
            postal_code=data["postal_code"],
            city=data["city"],
            country=data["country"],
            additional_info=data.get("additional_info"),
            phone=data.get("phone"),
        )

    def label_lines(self) -> List[str]:
        lines = [self.recipient_name, self.street]
        if self.additional_info:
            lines.append(self.additional_info)
        lines.append(f"{self.postal_code} {self.city}")
        lines.append(self.country.upper())
        return lines


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Keep the first two and last two digits, e.g. 06******78"""
    if not phone:
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "*" * len(digits)
    return f"{digits[:2]}{'*' * (len(digits) - 4)}{digits[-2:]}"


class AddressEncryption:
    """
    Authenticated symmetric encryption of postal addresses.

    Tokens are Fernet (AES-128-CBC + HMAC-SHA256) and therefore URL-safe text.
    Several keys may be configured: the first encrypts, all of them decrypt.
    """

    def __init__(self, keys: Optional[List[str]] = None):
        key_list = keys if keys is not None else self._configured_keys()
        try:
            self._fernet = MultiFernet([Fernet(key) for key in key_list])
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid address encryption key: {e}") from e
        self.key_count = len(key_list)

    @staticmethod
    def _configured_keys() -> List[str]:
        keys = Config.encryption_keys()
        if keys:
            return keys

        if Config.IS_PRODUCTION:
            raise ValueError("ADDRESS_ENCRYPTION_KEYS must be set in production")

        # Ciphertext written with this key is unreadable after restart
        logger.warning("⚠️ Generating ephemeral address encryption key - set ADDRESS_ENCRYPTION_KEYS to persist")
        return [Fernet.generate_key().decode("utf-8")]

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt_address(self, address: PostalAddress) -> str:
        """Validate and encrypt an address, returning URL-safe ciphertext"""
        address.validate()
        payload = {"v": ADDRESS_PAYLOAD_VERSION, "address": address.to_dict()}
        token = self._fernet.encrypt(json.dumps(payload, sort_keys=True).encode("utf-8"))
        return token.decode("utf-8")

    def decrypt_address(self, ciphertext: str) -> PostalAddress:
        """Decrypt ciphertext produced by encrypt_address; raises AddressIntegrityError on any tampering"""
        if not ciphertext:
            raise AddressIntegrityError("Encrypted address is empty")
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as e:
            logger.error("❌ ADDRESS_DECRYPT_FAILED: ciphertext failed authentication")
            raise AddressIntegrityError() from e

        try:
            payload = json.loads(plaintext.decode("utf-8"))
            return PostalAddress.from_dict(payload["address"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"❌ ADDRESS_DECRYPT_FAILED: malformed payload: {type(e).__name__}")
            raise AddressIntegrityError("Encrypted address payload is malformed") from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt an existing token under the primary key"""
        try:
            return self._fernet.rotate(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise AddressIntegrityError() from e
