from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.onboarding.security import get_current_subject

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured representation of an audit event.

    Keeps the payload to ids, types and high-level actions; message text and
    audio content never go into it.
    """

    timestamp: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    subject: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class AuditService:
    def log_event(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        subject: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a structured audit event.

        - `action`: high-level verb, e.g., "start_onboarding", "cancel".
        - `resource_type`: coarse type, e.g., "onboarding_session",
          "voice_transcription".
        - `resource_id`: stable identifier (UUID string) when available.
        - `subject`: optional identifier for the caller. If omitted, it is
          taken from the current security context (when API auth is enabled).
        - `extra`: optional small dict of metadata (counts, flags, owner id).
        """

        if subject is None:
            subject = get_current_subject()

        event = AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            subject=subject,
            extra=extra,
        )

        payload = asdict(event)
        try:
            logger.info(json.dumps(payload))
        except TypeError:
            # Something in extra is not JSON serializable.
            payload["extra"] = None
            logger.info(json.dumps(payload))


audit_service = AuditService()
