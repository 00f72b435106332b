"""
Tenancy store: organizations, workspaces and memberships.
"""

from flowguard.tenancy.service import TenancyService

__all__ = ["TenancyService"]
