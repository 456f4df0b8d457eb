"""
Audit trail for HRMS services.

This package provides:
- Audited entity tags and the append-only audit log model
- Entity and audit stores
- The bounded background audit writer
- Pre-capture dependency and response-observing ASGI middleware
"""
