"""
Flowguard - multi-tenant authorization engine.

Decides whether an authenticated identity may perform an action on a
resource across the organization -> workspace -> resource hierarchy.
"""

__version__ = "1.0.0"
