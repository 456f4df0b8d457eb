"""
HRMS services core.

Shared request gateway, token authentication, authorization and audit trail
used by every HRMS backend service.
"""
__version__ = "0.1.0"
