"""
Exception Handler Module
Provides the trade security exception taxonomy and error translation decorators
"""

import logging
import functools
from typing import Any, Callable, Optional

from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class TradeSecurityError(Exception):
    """Base class for every error raised by the trade security core"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(TradeSecurityError):
    """Custom validation error for input validation failures"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class AddressValidationError(ValidationError):
    """Postal address missing a required field"""


class NotParticipantError(ValidationError):
    """Caller is not allowed to act on this trade"""

    def __init__(self, trade_id: str, user_id: str, action: str):
        self.trade_id = trade_id
        self.user_id = user_id
        super().__init__(f"User {user_id} may not {action} on trade {trade_id}", field="user_id")


class InvalidTransitionError(TradeSecurityError):
    """Operation not permitted in the trade's current status; nothing was changed"""

    def __init__(self, current_state: str, attempted: str, reason: Optional[str] = None):
        self.current_state = current_state
        self.attempted = attempted
        self.reason = reason
        message = f"Cannot {attempted} while trade is {current_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class TradeNotFoundError(TradeSecurityError):
    def __init__(self, trade_id: str):
        self.trade_id = trade_id
        super().__init__(f"Trade {trade_id} not found")


class RedirectionNotFoundError(TradeSecurityError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Redirection code {code} not found")


class RedirectionExpiredError(TradeSecurityError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Redirection code {code} has expired")


class AddressIntegrityError(TradeSecurityError):
    """Ciphertext failed authentication (tampered or encrypted under an unknown key)"""

    def __init__(self, message: str = "Encrypted address failed integrity check", code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class ConcurrentModificationError(TradeSecurityError):
    """Another request changed the same trade first; the caller may retry"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} was modified concurrently")


class TradeCompletionError(TradeSecurityError):
    """Completion and its trust profile updates were rolled back as a unit"""

    def __init__(self, trade_id: str, cause: Exception):
        self.trade_id = trade_id
        self.cause = cause
        super().__init__(f"Completing trade {trade_id} failed and was rolled back: {cause}")


def translate_stale_data(entity: str = "Trade") -> Callable:
    """
    Decorator for service methods taking the entity id as first argument.
    Converts SQLAlchemy version conflicts into ConcurrentModificationError.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            try:
                return func(self, *args, **kwargs)
            except StaleDataError as e:
                entity_id = args[0] if args else kwargs.get("trade_id")
                logger.warning(f"⚠️ CONCURRENT_MODIFICATION: {entity} {entity_id} in {func.__name__}: {e}")
                raise ConcurrentModificationError(entity, str(entity_id)) from e

        return wrapper

    return decorator
