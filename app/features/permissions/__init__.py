"""
Access-control feature module.

Resolves a user's effective permissions within a tenant from the role
hierarchy, time-bounded role assignments and per-user overrides, with a
two-tier cache in front of the computation.
"""
