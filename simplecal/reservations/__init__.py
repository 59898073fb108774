"""Slot claims and the coordinator that grants them."""

from .claims import ClaimStore, InMemoryClaimStore, RedisClaimStore, SlotClaim

__all__ = ["ClaimStore", "InMemoryClaimStore", "RedisClaimStore", "SlotClaim"]
