"""
HTTP routers that are not tied to a single engine component.
"""
