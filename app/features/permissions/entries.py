"""
Effective-permission values produced by the resolver and stored in the cache.
"""
import enum
from typing import Any, Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.features.permissions.models import PermissionEffect, ScopeLevel


class OrgContext(BaseModel):
    """Organizational scope a principal is acting in."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    unit_id: Optional[str] = None
    location_id: Optional[str] = None
    region_id: Optional[str] = None

    def cache_fragment(self) -> str:
        return f"{self.tenant_id}:{self.unit_id or ''}:{self.location_id or ''}:{self.region_id or ''}"


class EffectivePermission(BaseModel):
    """One resolved entry, keyed by ``permission_code`` within a PermissionSet."""
    model_config = ConfigDict(frozen=True)

    permission_code: str
    module: str
    resource_type: str
    action: str
    scope_level: ScopeLevel
    effect: PermissionEffect
    source: Literal["role", "override"]
    source_id: str = Field(..., description="Role id or override id the entry came from")
    conditions: Optional[Dict[str, Any]] = None


class EntryState(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    ABSENT = "absent"


class PermissionSet:
    """
    Immutable map of permission code to resolved entry.

    ``state`` exposes the closed three-way outcome so callers never confuse
    "explicitly denied" with "never granted".
    """

    def __init__(self, entries: Optional[Dict[str, EffectivePermission]] = None):
        self._entries: Dict[str, EffectivePermission] = dict(entries or {})

    def get(self, code: str) -> Optional[EffectivePermission]:
        return self._entries.get(code)

    def state(self, code: str) -> EntryState:
        entry = self._entries.get(code)
        if entry is None:
            return EntryState.ABSENT
        if entry.effect == PermissionEffect.DENY:
            return EntryState.DENIED
        return EntryState.ALLOWED

    def allowed_codes(self) -> List[str]:
        return sorted(code for code, e in self._entries.items() if e.effect == PermissionEffect.ALLOW)

    def __iter__(self) -> Iterator[EffectivePermission]:
        for code in sorted(self._entries):
            yield self._entries[code]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, code: str) -> bool:
        return code in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PermissionSet):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"<PermissionSet({len(self._entries)} entries)>"

    def to_payload(self) -> List[Dict[str, Any]]:
        """JSON-serializable form used by the persisted cache tier."""
        return [entry.model_dump(mode="json") for entry in self]

    @classmethod
    def from_payload(cls, payload: List[Dict[str, Any]]) -> "PermissionSet":
        entries = (EffectivePermission.model_validate(item) for item in payload)
        return cls({entry.permission_code: entry for entry in entries})
