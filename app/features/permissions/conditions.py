"""
Constraint evaluation for role-permission conditions.

Conditions are a JSON object stored on the binding. Every key must be
satisfied; unknown keys and malformed values deny.

Example conditions:
    {"time_between": ["08:00", "18:00"]}
    {"day_of_week": ["monday", "tuesday", "wednesday", "thursday", "friday"]}
    {"locations": ["01J0...LOC1", "01J0...LOC2"]}
    {"resource_owner": "lead"}
"""
from dataclasses import dataclass
from datetime import datetime, time, timezone as dt_timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class ConstraintContext:
    """Runtime attributes a condition may be checked against."""
    now: datetime
    user_id: str
    unit_id: Optional[str] = None
    location_id: Optional[str] = None
    region_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None


# (user_id, resource_id) -> True if the user owns the resource
OwnershipCheck = Callable[[str, str], Awaitable[bool]]


def _parse_clock(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


class ConstraintEvaluator:
    """
    Evaluates binding conditions against a ``ConstraintContext``.

    Ownership checks are registered per resource type by the owning
    feature; a ``resource_owner`` condition for a type without a check
    always denies.
    """

    def __init__(self, timezone: str = config.CONSTRAINT_TIMEZONE):
        self.tz = dt_timezone.utc if timezone.upper() == "UTC" else ZoneInfo(timezone)
        self._ownership_checks: Dict[str, OwnershipCheck] = {}

    def register_ownership_check(self, resource_type: str, check: OwnershipCheck) -> None:
        self._ownership_checks[resource_type] = check

    async def evaluate(self, conditions: Optional[Dict[str, Any]], ctx: ConstraintContext) -> bool:
        """
        Returns:
            True if there are no conditions or every condition is met
        """
        if not conditions:
            return True

        local_now = ctx.now.astimezone(self.tz)

        for condition_key, condition_value in conditions.items():
            if condition_key == "time_between":
                try:
                    start_time = _parse_clock(condition_value[0])
                    end_time = _parse_clock(condition_value[1])
                except (TypeError, ValueError, IndexError, KeyError) as e:
                    log.warning(f"Invalid time_between condition: {condition_value}, error: {e}")
                    return False

                current_time = local_now.time().replace(second=0, microsecond=0)
                if start_time <= end_time:
                    within = start_time <= current_time <= end_time
                else:
                    # Window wraps past midnight, e.g. 22:00-06:00
                    within = current_time >= start_time or current_time <= end_time
                if not within:
                    log.debug(f"Time condition failed: {current_time} not between {start_time} and {end_time}")
                    return False

            elif condition_key == "day_of_week":
                if not isinstance(condition_value, list):
                    log.warning(f"Invalid day_of_week condition: {condition_value}")
                    return False
                current_day = local_now.strftime("%A").lower()
                if current_day not in [str(day).lower() for day in condition_value]:
                    log.debug(f"Day of week condition failed: {current_day} not in {condition_value}")
                    return False

            elif condition_key == "locations":
                if not isinstance(condition_value, list):
                    log.warning(f"Invalid locations condition: {condition_value}")
                    return False
                if ctx.location_id is None or ctx.location_id not in condition_value:
                    log.debug(f"Location condition failed: {ctx.location_id} not in {condition_value}")
                    return False

            elif condition_key == "resource_owner":
                resource_type = condition_value if isinstance(condition_value, str) else ctx.resource_type
                check = self._ownership_checks.get(resource_type) if resource_type else None
                if ctx.resource_id is None or check is None:
                    log.debug(
                        f"Ownership condition failed: resource {resource_type}:{ctx.resource_id} "
                        f"has no id or no registered ownership check"
                    )
                    return False
                if not await check(ctx.user_id, ctx.resource_id):
                    log.debug(f"Ownership condition failed: {ctx.user_id} does not own {resource_type}:{ctx.resource_id}")
                    return False

            else:
                log.warning(f"Unknown condition type: {condition_key}, denying")
                return False

        return True
