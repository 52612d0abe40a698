"""Audit trail and device fingerprinting for security events."""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from security_engine.models.internal_models import AuditEvent
from security_engine.utils.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)


def fingerprint(device_attributes: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Derive a stable device fingerprint.

    The hash covers every attribute in canonical JSON form (sorted keys,
    compact separators), so identical bundles always hash identically and
    any changed attribute changes the hash. Used for correlation only.

    Args:
        device_attributes: Platform, OS, screen metrics and similar

    Returns:
        SHA-256 hex digest, or None when no attributes were supplied
    """
    if not device_attributes:
        return None
    canonical = json.dumps(device_attributes, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditRecorder:
    """Append-only sink for security events that never fails the caller."""

    def __init__(self, repository, clock: Clock = utcnow):
        self.repository = repository
        self.clock = clock

    async def record(
        self,
        owner_id: str,
        action: str,
        outcome: str,
        fingerprint: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """
        Record an audit event.

        Storage failures are logged and swallowed; the security decision the
        caller is making must not depend on the audit write.

        Returns:
            The stored event, or None if it could not be written
        """
        event = AuditEvent(
            owner_id=owner_id,
            action=action,
            outcome=outcome,
            fingerprint=fingerprint,
            detail=detail or {},
            timestamp=self.clock(),
        )
        try:
            await self.repository.insert(event)
            logger.debug(f"Audit event recorded: {action}/{outcome} for {owner_id}")
            return event
        except Exception as e:
            logger.error(f"Failed to record audit event {action}/{outcome} for {owner_id}: {e}")
            return None

    async def history(self, owner_id: str, limit: int = 20) -> List[AuditEvent]:
        """Most recent events for a user, newest first."""
        return await self.repository.list_for_owner(owner_id, limit)
