"""Downstream integration export.

Exposes events that have not been exported yet as a paginated queue with an
idempotent mark-consumed operation.
"""

from .queue import IntegrationQueue, PendingPage, clamp_param

__all__ = ["IntegrationQueue", "PendingPage", "clamp_param"]
