"""Admin Service - operator triggers and pipeline health."""
from .admin import AdminService

__all__ = ["AdminService"]
