"""
Authentication and authorization for HRMS services.

This package provides:
- Stateless bearer token issue/verify
- Authentication and role/ownership authorization dependencies
- The auth service: registration, login and user approval
"""
