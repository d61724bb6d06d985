"""
Common utilities and shared modules.
"""

from .broadcast import (
    BroadcastHub,
    GLOBAL_TOPIC,
    hub,
    publish,
    router as broadcast_router,
)

__all__ = [
    "BroadcastHub",
    "GLOBAL_TOPIC",
    "hub",
    "publish",
    "broadcast_router",
]
