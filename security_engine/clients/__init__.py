"""Client modules for persistence and message delivery."""

from typing import Optional, Union

from security_engine.config import settings
from security_engine.clients.memory_store import InMemoryDatabaseManager
from security_engine.clients.sms_client import (
    ConsoleSMSProvider,
    OTPMessage,
    SMSDeliveryError,
    SMSProvider,
    SMSResult,
    TwilioSMSProvider,
    get_sms_provider,
    is_valid_phone_number,
    mask_phone_number,
)
from security_engine.clients.supabase_client import DatabaseManager

StoreManager = Union[DatabaseManager, InMemoryDatabaseManager]

_database_manager: Optional[StoreManager] = None


def get_database_manager() -> StoreManager:
    """
    Get the global database manager for the configured storage backend.

    Returns:
        The Supabase-backed manager, or the in-memory one when STORAGE_BACKEND=memory
    """
    global _database_manager
    if _database_manager is None:
        if settings.storage_backend == "supabase":
            _database_manager = DatabaseManager()
        else:
            _database_manager = InMemoryDatabaseManager()
    return _database_manager


__all__ = [
    "ConsoleSMSProvider",
    "DatabaseManager",
    "InMemoryDatabaseManager",
    "OTPMessage",
    "SMSDeliveryError",
    "SMSProvider",
    "SMSResult",
    "StoreManager",
    "TwilioSMSProvider",
    "get_database_manager",
    "get_sms_provider",
    "is_valid_phone_number",
    "mask_phone_number",
]
