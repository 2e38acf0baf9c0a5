"""API Routers package."""
from . import auth, employees, schedule, settings

__all__ = ['auth', 'employees', 'schedule', 'settings']
