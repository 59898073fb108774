"""Claim table: short-lived exclusive holds on (organizer, slot interval).

The only invariant a store has to keep is that at most one live claim
exists for any overlapping interval of one organizer.  Check-and-set is
atomic per *bucket* (organizer + UTC calendar date), never global, so
unrelated organizers and days proceed in parallel.

Two implementations:

  InMemoryClaimStore  one process; per-bucket ``threading.Lock``
  RedisClaimStore     shared across instances; Lua script per bucket set
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from ..availability.base import Interval

log = logging.getLogger("simplecal.reservations.claims")

# Redis keeps a claim's record this long past expiry so late use reads as expired.
RECORD_GRACE_MS = 300_000


@dataclass(frozen=True)
class SlotClaim:
    """A live-until-``expires_at`` exclusivity grant over one slot interval."""

    claim_id: str
    organizer_id: str
    slot_start: datetime
    slot_end: datetime
    claimant_id: str
    issued_at: datetime
    expires_at: datetime

    @property
    def interval(self) -> Interval:
        return Interval(self.slot_start, self.slot_end)

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    def overlaps(self, other: "SlotClaim") -> bool:
        return self.organizer_id == other.organizer_id and self.interval.overlaps(other.interval)

    def to_event(self) -> dict:
        """Public view: no claim handle, no claimant."""
        return {
            "organizer_id": self.organizer_id,
            "slot_start": self.slot_start.isoformat(),
            "slot_end": self.slot_end.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    def to_record(self) -> dict:
        return {
            "claim_id": self.claim_id,
            "organizer_id": self.organizer_id,
            "claimant_id": self.claimant_id,
            "start_ms": _to_ms(self.slot_start),
            "end_ms": _to_ms(self.slot_end),
            "issued_ms": _to_ms(self.issued_at),
            "expires_ms": _to_ms(self.expires_at),
        }

    @classmethod
    def from_record(cls, record: dict) -> "SlotClaim":
        return cls(
            claim_id=record["claim_id"],
            organizer_id=record["organizer_id"],
            claimant_id=record["claimant_id"],
            slot_start=_from_ms(record["start_ms"]),
            slot_end=_from_ms(record["end_ms"]),
            issued_at=_from_ms(record["issued_ms"]),
            expires_at=_from_ms(record["expires_ms"]),
        )


def bucket_keys(organizer_id: str, start: datetime, end: datetime) -> list[str]:
    """Bucket ids (organizer + UTC date) an interval touches, sorted."""
    first = start.astimezone(timezone.utc).date()
    last = (end.astimezone(timezone.utc) - timedelta(microseconds=1)).date()
    keys = []
    day = first
    while day <= last:
        keys.append(f"{organizer_id}:{day.isoformat()}")
        day += timedelta(days=1)
    return keys


class ClaimStore(ABC):
    """Abstract claim table.

    Subclasses must make ``acquire`` an atomic check-and-set over every
    bucket the interval touches.
    """

    @abstractmethod
    def acquire(self, claim: SlotClaim, now: datetime) -> Optional[SlotClaim]:
        """Store ``claim`` unless another claimant holds an overlapping live claim.

        Live claims of the same claimant that overlap are superseded, which
        is how a client renews: by claiming again.

        Args:
            claim: The candidate claim.
            now: Current time, used to drop expired claims on the way.

        Returns:
            None when the claim was stored, otherwise the blocking claim.
        """

    @abstractmethod
    def get(self, claim_id: str) -> Optional[SlotClaim]:
        """Return the claim (possibly already expired) or None if unknown."""

    @abstractmethod
    def remove(self, claim_id: str) -> Optional[SlotClaim]:
        """Delete a claim.  Returns the removed claim, or None if absent."""

    @abstractmethod
    def live_overlapping(
        self, organizer_id: str, start: datetime, end: datetime, now: datetime
    ) -> list[SlotClaim]:
        """Live claims of ``organizer_id`` overlapping ``[start, end)``."""

    @abstractmethod
    def purge_expired(self, now: datetime) -> list[SlotClaim]:
        """Drop every expired claim and return the ones dropped."""


class _BucketLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class InMemoryClaimStore(ClaimStore):
    """Process-local claim table with one lock per bucket.

    A bucket's lock and its entry in ``_buckets`` exist only while some
    thread is using the bucket or it still holds claims.
    """

    def __init__(self) -> None:
        self._claims: dict[str, SlotClaim] = {}
        self._buckets: dict[str, dict[str, SlotClaim]] = {}
        self._locks: dict[str, _BucketLock] = {}
        self._master_lock = threading.Lock()  # guards _locks and bucket cleanup

    @contextmanager
    def _locked(self, keys: list[str]) -> Iterator[None]:
        # Fixed (sorted) acquisition order keeps multi-bucket claims deadlock free.
        keys = sorted(keys)
        with self._master_lock:
            entries = []
            for key in keys:
                entry = self._locks.get(key)
                if entry is None:
                    entry = self._locks[key] = _BucketLock()
                entry.users += 1
                entries.append(entry)
        try:
            with ExitStack() as stack:
                for entry in entries:
                    stack.enter_context(entry.lock)
                yield
        finally:
            with self._master_lock:
                for key, entry in zip(keys, entries):
                    entry.users -= 1
                    if entry.users == 0:
                        # Nobody holds or waits on this lock, so the bucket is safe to drop.
                        del self._locks[key]
                        if not self._buckets.get(key):
                            self._buckets.pop(key, None)

    def _current(self, bucket: dict[str, SlotClaim], now: datetime) -> list[SlotClaim]:
        """Live, still-registered claims in a bucket; prunes the rest.

        Expired claims leave the bucket but stay readable through ``get``
        until ``purge_expired`` so their late use is reported as expiry.
        """
        out = []
        for claim_id, claim in list(bucket.items()):
            if self._claims.get(claim_id) is not claim or not claim.is_live(now):
                del bucket[claim_id]
            else:
                out.append(claim)
        return out

    def acquire(self, claim: SlotClaim, now: datetime) -> Optional[SlotClaim]:
        keys = bucket_keys(claim.organizer_id, claim.slot_start, claim.slot_end)
        with self._locked(keys):
            superseded: list[SlotClaim] = []
            for key in keys:
                for held in self._current(self._buckets.get(key, {}), now):
                    if not held.overlaps(claim):
                        continue
                    if held.claimant_id != claim.claimant_id:
                        return held
                    superseded.append(held)

            for old in superseded:
                self._claims.pop(old.claim_id, None)
            for key in keys:
                self._buckets.setdefault(key, {})[claim.claim_id] = claim
            self._claims[claim.claim_id] = claim
        return None

    def get(self, claim_id: str) -> Optional[SlotClaim]:
        return self._claims.get(claim_id)

    def remove(self, claim_id: str) -> Optional[SlotClaim]:
        claim = self._claims.get(claim_id)
        if claim is None:
            return None
        keys = bucket_keys(claim.organizer_id, claim.slot_start, claim.slot_end)
        with self._locked(keys):
            if self._claims.get(claim_id) is not claim:
                return None
            del self._claims[claim_id]
            for key in keys:
                self._buckets.get(key, {}).pop(claim_id, None)
        return claim

    def live_overlapping(
        self, organizer_id: str, start: datetime, end: datetime, now: datetime
    ) -> list[SlotClaim]:
        wanted = Interval(start, end)
        found: dict[str, SlotClaim] = {}
        keys = bucket_keys(organizer_id, start, end)
        with self._locked(keys):
            for key in keys:
                for claim in self._current(self._buckets.get(key, {}), now):
                    if claim.interval.overlaps(wanted):
                        found[claim.claim_id] = claim
        return sorted(found.values(), key=lambda c: c.slot_start)

    def purge_expired(self, now: datetime) -> list[SlotClaim]:
        expired = [c for c in list(self._claims.values()) if not c.is_live(now)]
        removed = []
        for claim in expired:
            if self.remove(claim.claim_id) is not None:
                removed.append(claim)
        return removed

    def __len__(self) -> int:
        return len(self._claims)


# ── Redis-backed store ─────────────────────────────────────────────

_ACQUIRE_LUA = """
local now = tonumber(ARGV[3])
local s = tonumber(ARGV[4])
local e = tonumber(ARGV[5])
local ttl = tonumber(ARGV[6])
local superseded = {}
for _, key in ipairs(KEYS) do
  local entries = redis.call('HGETALL', key)
  for i = 1, #entries, 2 do
    local c = cjson.decode(entries[i + 1])
    if tonumber(c.expires_ms) <= now then
      redis.call('HDEL', key, entries[i])
    elseif tonumber(c.start_ms) < e and s < tonumber(c.end_ms) then
      if c.claimant_id ~= ARGV[2] then
        return entries[i + 1]
      end
      superseded[entries[i]] = c
    end
  end
end
for cid, c in pairs(superseded) do
  for _, bkey in ipairs(c.buckets) do
    redis.call('HDEL', bkey, cid)
  end
  redis.call('DEL', ARGV[8] .. cid)
end
for _, key in ipairs(KEYS) do
  redis.call('HSET', key, ARGV[1], ARGV[7])
  redis.call('PEXPIRE', key, ttl)
end
redis.call('SET', ARGV[8] .. ARGV[1], ARGV[7], 'PX', ttl + tonumber(ARGV[9]))
return false
"""

_RELEASE_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local c = cjson.decode(raw)
for _, bkey in ipairs(c.buckets) do
  redis.call('HDEL', bkey, c.claim_id)
end
redis.call('DEL', KEYS[1])
return raw
"""


class RedisClaimStore(ClaimStore):
    """Claim table shared by every coordinator instance through Redis.

    Each bucket is a hash ``<prefix>claims:<organizer>:<date>`` mapping
    claim id to its JSON record; each claim also has its own key with a
    PX expiry so an abandoned claim disappears without a sweep.
    """

    def __init__(self, client, prefix: str = "simplecal:") -> None:
        self._client = client
        self._prefix = prefix
        self._acquire = client.register_script(_ACQUIRE_LUA)
        self._release = client.register_script(_RELEASE_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisClaimStore":
        import redis

        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    def _bucket_key(self, bucket: str) -> str:
        return f"{self._prefix}claims:{bucket}"

    def _claim_key(self, claim_id: str) -> str:
        return f"{self._prefix}claim:{claim_id}"

    def _keys_for(self, organizer_id: str, start: datetime, end: datetime) -> list[str]:
        return [self._bucket_key(b) for b in bucket_keys(organizer_id, start, end)]

    def acquire(self, claim: SlotClaim, now: datetime) -> Optional[SlotClaim]:
        keys = self._keys_for(claim.organizer_id, claim.slot_start, claim.slot_end)
        record = claim.to_record()
        record["buckets"] = keys
        ttl_ms = max(1, _to_ms(claim.expires_at) - _to_ms(now))
        blocking = self._acquire(
            keys=keys,
            args=[
                claim.claim_id,
                claim.claimant_id,
                _to_ms(now),
                record["start_ms"],
                record["end_ms"],
                ttl_ms,
                json.dumps(record),
                self._claim_key(""),
                RECORD_GRACE_MS,
            ],
        )
        if blocking:
            return SlotClaim.from_record(json.loads(blocking))
        return None

    def get(self, claim_id: str) -> Optional[SlotClaim]:
        raw = self._client.get(self._claim_key(claim_id))
        if not raw:
            return None
        return SlotClaim.from_record(json.loads(raw))

    def remove(self, claim_id: str) -> Optional[SlotClaim]:
        raw = self._release(keys=[self._claim_key(claim_id)], args=[])
        if not raw:
            return None
        return SlotClaim.from_record(json.loads(raw))

    def live_overlapping(
        self, organizer_id: str, start: datetime, end: datetime, now: datetime
    ) -> list[SlotClaim]:
        wanted = Interval(start, end)
        found: dict[str, SlotClaim] = {}
        for key in self._keys_for(organizer_id, start, end):
            for raw in self._client.hvals(key):
                claim = SlotClaim.from_record(json.loads(raw))
                if claim.is_live(now) and claim.interval.overlaps(wanted):
                    found[claim.claim_id] = claim
        return sorted(found.values(), key=lambda c: c.slot_start)

    def purge_expired(self, now: datetime) -> list[SlotClaim]:
        removed: dict[str, SlotClaim] = {}
        for key in self._client.scan_iter(match=f"{self._prefix}claims:*"):
            for claim_id, raw in self._client.hgetall(key).items():
                claim = SlotClaim.from_record(json.loads(raw))
                if not claim.is_live(now) and self._client.hdel(key, claim_id):
                    removed[claim_id] = claim
        return list(removed.values())


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
