"""
Core utilities shared by every layer.

This package provides:
- Application settings (pydantic-settings)
- Logging configuration with correlation/database-code context
- The typed error hierarchy
- The entity <-> DTO Mapper
- FastAPI dependency helpers (provider, database code, services)
"""
