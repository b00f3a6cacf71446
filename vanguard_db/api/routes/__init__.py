"""
API route modules.

This package contains subrouters for:
- Users: paged listing, create, get and delete, routed by the X-Db-Code header

Routers are included from vanguard_db.api.main (under the /api/v1 prefix).
"""
