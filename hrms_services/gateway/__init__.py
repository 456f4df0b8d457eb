"""
API gateway for HRMS services.

This package provides:
- The static prefix route table
- Transparent forwarding and health fan-out
"""
