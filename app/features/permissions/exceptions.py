"""
Errors raised by the access-control core.

Routes never catch these; ``app.main`` maps them to HTTP responses.
"""


class RBACError(Exception):
    """Base class for access-control errors."""


class NotFoundError(RBACError):
    """A referenced role, permission code, unit or assignment does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ForbiddenError(RBACError):
    """The requested mutation is not allowed for this target."""


class InvalidOperationError(RBACError):
    """The request is well-formed but cannot be applied (e.g. moving a node under itself)."""


class HierarchyIntegrityError(RBACError):
    """
    Nested-set coordinates of a tenant's tree are inconsistent.

    Fatal for hierarchy reads of that tenant until repaired.
    """

    def __init__(self, tree: str, tenant_id: str, detail: str):
        self.tree = tree
        self.tenant_id = tenant_id
        self.detail = detail
        super().__init__(f"{tree} hierarchy for tenant {tenant_id} is inconsistent: {detail}")


class CacheUnavailableError(RBACError):
    """The persisted cache tier cannot be reached."""
