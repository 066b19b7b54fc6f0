"""Degraded-mode guard: stop admitting work when storage quota runs out."""

import logging
from datetime import datetime
from typing import Optional

from fileflow.exceptions import QuotaExhaustedError, ServiceUnavailableError
from fileflow.jobs.models import utcnow

logger = logging.getLogger(__name__)

# Postgres insufficient_resources class (disk_full, out_of_memory,
# configuration_limit_exceeded) as reported through PostgREST.
QUOTA_ERROR_CODES = {"53100", "53200", "53400"}
QUOTA_HTTP_STATUSES = {507}
# Storage wording only; a bare "quota" also shows up in rate-limit errors.
QUOTA_MESSAGE_MARKERS = (
    "over your space",
    "space quota",
    "storage quota",
    "disk quota",
    "disk full",
    "no space left",
    "insufficient storage",
    "storage limit",
)


def is_quota_error(exc: BaseException) -> bool:
    """True when ``exc`` (or anything it was raised from) signals exhausted storage."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, QuotaExhaustedError):
            return True
        code = getattr(current, "code", None)
        if code is not None and str(code) in QUOTA_ERROR_CODES:
            return True
        status = getattr(current, "status_code", None) or getattr(current, "status", None)
        if isinstance(status, int) and status in QUOTA_HTTP_STATUSES:
            return True
        message = str(getattr(current, "message", None) or current).lower()
        if any(marker in message for marker in QUOTA_MESSAGE_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


class DegradedModeGuard:
    """Scheduler-wide read-only switch.

    Once tripped it stays tripped until the process restarts; admissions fail
    with ``ServiceUnavailableError`` while reads and queued work carry on.
    """

    def __init__(self):
        self._degraded = False
        self._reason: Optional[str] = None
        self._since: Optional[datetime] = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def since(self) -> Optional[datetime]:
        return self._since

    def check(self, exc: BaseException) -> bool:
        """Trip the guard if ``exc`` is a quota error. Returns whether it was."""
        if not is_quota_error(exc):
            return False
        self.trip(str(exc))
        return True

    def trip(self, reason: str) -> None:
        if self._degraded:
            return
        self._degraded = True
        self._reason = reason
        self._since = utcnow()
        logger.critical(
            "Storage quota exhausted - entering degraded mode, new jobs will be rejected",
            extra={"reason": reason},
        )

    def ensure_available(self) -> None:
        if self._degraded:
            raise ServiceUnavailableError(
                "Job admission temporarily unavailable: storage quota exhausted",
                details={"degraded_since": self._since.isoformat() if self._since else None},
            )
