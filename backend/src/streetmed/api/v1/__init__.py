"""API v1 routers."""

from streetmed.api.v1 import assignments, orders, rounds

__all__ = ["assignments", "orders", "rounds"]
