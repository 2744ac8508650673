"""
External collaborators of the trade security core

The user directory, notification dispatcher and carrier gateway live outside this
service. Only the narrow interfaces below are used; the logging implementations
serve local runs and development.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from utils.exception_handler import AddressValidationError
from utils.pii_protection import PostalAddress, mask_phone

logger = logging.getLogger(__name__)


class UserDirectory(ABC):
    """Read-only view of registered users"""

    @abstractmethod
    def get_account_age_days(self, user_id: str) -> int:
        ...

    @abstractmethod
    def is_email_verified(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def is_phone_verified(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def get_shipping_address(self, user_id: str) -> PostalAddress:
        """Current real shipping address; raises AddressValidationError when none is on file"""
        ...


class NotificationDispatcher(ABC):
    """Fire-and-forget user notifications (push, email)"""

    @abstractmethod
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class CarrierGateway(ABC):
    """Outbound channel telling the carrier where a parcel really goes"""

    @abstractmethod
    def notify_real_destination(
        self, code: str, address: PostalAddress, trade_id: str, direction: str
    ) -> None:
        ...


class InMemoryUserDirectory(UserDirectory):
    """Dictionary-backed directory for local runs"""

    def __init__(self):
        self._users: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        user_id: str,
        address: Optional[PostalAddress] = None,
        account_age_days: int = 0,
        verified_email: bool = False,
        verified_phone: bool = False,
    ) -> None:
        self._users[user_id] = {
            "address": address,
            "account_age_days": account_age_days,
            "verified_email": verified_email,
            "verified_phone": verified_phone,
        }

    def _user(self, user_id: str) -> Dict[str, Any]:
        # Unknown users look like brand-new unverified accounts
        return self._users.get(user_id, {})

    def get_account_age_days(self, user_id: str) -> int:
        return int(self._user(user_id).get("account_age_days", 0))

    def is_email_verified(self, user_id: str) -> bool:
        return bool(self._user(user_id).get("verified_email", False))

    def is_phone_verified(self, user_id: str) -> bool:
        return bool(self._user(user_id).get("verified_phone", False))

    def get_shipping_address(self, user_id: str) -> PostalAddress:
        address = self._user(user_id).get("address")
        if address is None:
            raise AddressValidationError(f"No shipping address on file for user {user_id}", field="address")
        return address


class LoggingNotificationDispatcher(NotificationDispatcher):
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📨 NOTIFY: user={user_id} event={event} trade={payload.get('trade_id')}")


class LoggingCarrierGateway(CarrierGateway):
    def notify_real_destination(
        self, code: str, address: PostalAddress, trade_id: str, direction: str
    ) -> None:
        # Never log the street line
        logger.info(
            f"🚚 CARRIER_REDIRECT: code={code} trade={trade_id} direction={direction} "
            f"city={address.city} country={address.country} phone={mask_phone(address.phone)}"
        )
