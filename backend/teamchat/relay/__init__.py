"""Relay: fans workspace room events out to connected clients."""
from .manager import RelayManager, relay
from .router import router

__all__ = ["RelayManager", "relay", "router"]
