from . import admin, assignments, health, tickets

__all__ = ["admin", "assignments", "health", "tickets"]
