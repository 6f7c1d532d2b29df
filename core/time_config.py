"""
Time Configuration Service — one place that answers "may we send now?".

Resolves the effective business-hours window for a service and tenant,
evaluates it against local time in the window's timezone, and computes
the next instant a closed window opens again.

Window precedence, most specific first:
  1. an explicit window carried by the envelope's behavior config
  2. a per-tenant override set at runtime
  3. the service's custom window, only when inherit_business_hours is False
  4. the global window
"""
from __future__ import annotations

import structlog
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from config.settings import ServiceTimeConfig, TimeConfig
from models.schemas import BusinessHoursWindow

logger = structlog.get_logger()

SERVICES = ("rate_limiting", "human_behavior", "automation_rules")
_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def local_weekday(dt: datetime) -> int:
    """Day index with 0 = Sunday."""
    return (dt.weekday() + 1) % 7


def is_within(window: BusinessHoursWindow, at: datetime) -> bool:
    """Evaluate a window against an aware instant. End time is inclusive."""
    if not window.enabled:
        return True
    local = at.astimezone(ZoneInfo(window.timezone))
    if local_weekday(local) not in window.days_of_week:
        return False
    minutes = local.hour * 60 + local.minute
    if window.is_overnight:
        return minutes >= window.start_minutes or minutes <= window.end_minutes
    return window.start_minutes <= minutes <= window.end_minutes


def next_window_start(window: BusinessHoursWindow, at: datetime) -> datetime:
    """
    Earliest instant at or after `at` that lies inside the window.

    Returns `at` unchanged when the window is disabled or already open.
    """
    if is_within(window, at):
        return at
    tz = ZoneInfo(window.timezone)
    local = at.astimezone(tz)
    start = dtime(window.start_minutes // 60, window.start_minutes % 60)

    candidates: list[datetime] = []
    for offset in range(9):
        day = local.date() + timedelta(days=offset)
        openings = [start, dtime(0, 0)] if window.is_overnight else [start]
        for opening in openings:
            candidate = datetime.combine(day, opening, tzinfo=tz)
            if candidate > at and is_within(window, candidate):
                candidates.append(candidate)
    if not candidates:
        # Unreachable for a validated window; keep the worker moving regardless.
        logger.warning("business_hours_no_opening", window=window.model_dump())
        return at + timedelta(days=1)
    return min(candidates)


class TimeConfigService:
    """Explicitly constructed and passed to the components that need it."""

    def __init__(self, config: Optional[TimeConfig] = None):
        self.config = config or TimeConfig()
        self._tenant_windows: dict[str, BusinessHoursWindow] = {}

    @property
    def timezone(self) -> str:
        return self.config.timezone

    def _service(self, service: Optional[str]) -> Optional[ServiceTimeConfig]:
        if service is None:
            return None
        return getattr(self.config, service, None) if service in SERVICES else None

    # ── Overrides ─────────────────────────────────────────

    def set_tenant_window(self, tenant_id: str, window: Optional[BusinessHoursWindow]) -> None:
        if window is None:
            self._tenant_windows.pop(tenant_id, None)
        else:
            self._tenant_windows[tenant_id] = window
        logger.info("tenant_business_hours_updated", tenant_id=tenant_id,
                    cleared=window is None)

    def update_global_window(self, **changes: Any) -> BusinessHoursWindow:
        merged = {**self.config.business_hours.model_dump(), **changes}
        self.config.business_hours = BusinessHoursWindow(**merged)
        logger.info("global_business_hours_updated", changes=list(changes))
        return self.config.business_hours

    # ── Resolution ────────────────────────────────────────

    def effective_window(
        self,
        service: Optional[str] = None,
        tenant_id: Optional[str] = None,
        override: Optional[BusinessHoursWindow] = None,
    ) -> BusinessHoursWindow:
        if override is not None:
            return override
        if tenant_id is not None and tenant_id in self._tenant_windows:
            return self._tenant_windows[tenant_id]
        svc = self._service(service)
        if svc is not None and not svc.inherit_business_hours and svc.custom_business_hours:
            return svc.custom_business_hours
        return self.config.business_hours

    def is_within_business_hours(
        self,
        at: datetime,
        service: Optional[str] = None,
        tenant_id: Optional[str] = None,
        override: Optional[BusinessHoursWindow] = None,
    ) -> bool:
        return is_within(self.effective_window(service, tenant_id, override), at)

    def next_window_start(
        self,
        at: datetime,
        service: Optional[str] = None,
        tenant_id: Optional[str] = None,
        override: Optional[BusinessHoursWindow] = None,
    ) -> datetime:
        return next_window_start(self.effective_window(service, tenant_id, override), at)

    def now_local(self, epoch_seconds: float) -> datetime:
        """Convert an epoch timestamp to an aware datetime in the configured timezone."""
        return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).astimezone(ZoneInfo(self.timezone))

    def summary(self, at: datetime, tenant_id: Optional[str] = None) -> dict[str, Any]:
        """Display summary of the global (or tenant) window."""
        window = self.effective_window(tenant_id=tenant_id)
        opens = next_window_start(window, at)
        return {
            "enabled": window.enabled,
            "time_range": f"{window.start_time} - {window.end_time}",
            "days": ", ".join(_DAY_NAMES[d] for d in sorted(window.days_of_week)),
            "timezone": window.timezone,
            "is_currently_active": is_within(window, at),
            "seconds_until_open": max(0.0, (opens - at).total_seconds()),
        }
