from __future__ import annotations

"""
MockRedisClient (async): test-grade, wrapper-compatible
========================================================
Covers the subset of Redis used by the ingest service:

KV        : get/set (ex/px/nx/xx)/delete/exists
Health    : ping/close/flushdb/flushall
Streams   : xadd (MAXLEN), xgroup_create (BUSYGROUP), xreadgroup (">" and "0"),
            xack, xautoclaim, xlen, xpending_ids (test helper)

`RedisClient.lock` is built on SET NX + GET + DEL, so the KV subset is all
the maintenance locks need.

Design notes
------------
- Entry ids are `<seq>-0`, strictly increasing per client.
- `xreadgroup(..., {stream: ">"})` delivers new entries and records them as
  pending for the consumer; `{stream: "0"}` re-reads that consumer's pending
  entries (what Redis does after a crash).
- `xautoclaim` honours `min_idle_time` against each entry's last delivery.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import time

from redis.exceptions import ResponseError


def _now() -> float:
    return time.time()


@dataclass
class _Group:
    cursor: int  # index of the next undelivered entry
    pending: Dict[str, List[str]] = field(default_factory=dict)  # consumer -> entry ids
    delivered_at: Dict[str, float] = field(default_factory=dict)  # entry id -> last delivery


class MockRedisClient:
    def __init__(self) -> None:
        self.store: Dict[str, Any] = {}
        self.expirations: Dict[str, Optional[float]] = {}
        self.streams: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
        self.groups: Dict[Tuple[str, str], _Group] = {}
        self._seq = 0
        self._closed = False

    # ── housekeeping ──────────────────────────────────────────
    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._closed = True

    async def flushdb(self) -> None:
        self.store.clear()
        self.expirations.clear()
        self.streams.clear()
        self.groups.clear()

    async def flushall(self) -> None:
        await self.flushdb()

    # ── expiration helpers ────────────────────────────────────
    def _expired(self, key: str) -> bool:
        exp = self.expirations.get(key)
        return exp is not None and exp <= _now()

    def _purge_expired(self) -> None:
        for k in list(self.store.keys()):
            if self._expired(k):
                self.store.pop(k, None)
                self.expirations.pop(k, None)

    # ─────────────────────────────────────────────────────────
    # String / KV commands
    # ─────────────────────────────────────────────────────────
    async def get(self, key: str) -> Optional[Any]:
        self._purge_expired()
        return self.store.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
    ) -> bool:
        self._purge_expired()
        exists = key in self.store
        if nx and exists:
            return False
        if xx and not exists:
            return False
        self.store[key] = value
        if ex is not None:
            self.expirations[key] = _now() + int(ex)
        elif px is not None:
            self.expirations[key] = _now() + int(px) / 1000.0
        else:
            self.expirations[key] = None
        return True

    async def exists(self, *keys: str) -> int:
        self._purge_expired()
        return sum(1 for k in keys if k in self.store or k in self.streams)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            removed += int(self.store.pop(k, None) is not None)
            removed += int(self.streams.pop(k, None) is not None)
            self.expirations.pop(k, None)
        return removed

    # ─────────────────────────────────────────────────────────
    # Streams
    # ─────────────────────────────────────────────────────────
    async def xadd(
        self,
        name: str,
        fields: Dict[str, Any],
        id: str = "*",
        maxlen: Optional[int] = None,
        approximate: bool = True,
    ) -> str:
        self._seq += 1
        entry_id = f"{self._seq}-0"
        entries = self.streams.setdefault(name, [])
        entries.append((entry_id, dict(fields)))
        if maxlen is not None and len(entries) > maxlen:
            drop = len(entries) - int(maxlen)
            del entries[:drop]
            for (stream, _g), group in self.groups.items():
                if stream == name:
                    group.cursor = max(0, group.cursor - drop)
        return entry_id

    async def xlen(self, name: str) -> int:
        return len(self.streams.get(name, []))

    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> bool:
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("The XGROUP subcommand requires the key to exist")
            self.streams[name] = []
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        cursor = 0 if id == "0" else len(self.streams[name])
        self.groups[(name, groupname)] = _Group(cursor=cursor)
        return True

    async def xreadgroup(
        self,
        groupname: str,
        consumername: str,
        streams: Dict[str, str],
        count: Optional[int] = None,
        block: Optional[int] = None,
        noack: bool = False,
    ) -> List[List[Any]]:
        out: List[List[Any]] = []
        for name, start in streams.items():
            group = self.groups.get((name, groupname))
            if group is None:
                raise ResponseError(f"NOGROUP No such key '{name}' or consumer group '{groupname}'")
            entries = self.streams.get(name, [])
            mine = group.pending.setdefault(consumername, [])
            if start == ">":
                batch = entries[group.cursor:]
                if count is not None:
                    batch = batch[: int(count)]
                group.cursor += len(batch)
                if not noack:
                    mine.extend(eid for eid, _f in batch)
                    for eid, _f in batch:
                        group.delivered_at[eid] = _now()
                if batch:
                    out.append([name, [(eid, dict(f)) for eid, f in batch]])
            else:
                by_id = dict(entries)
                ids = [eid for eid in mine if eid in by_id]
                if count is not None:
                    ids = ids[: int(count)]
                for eid in ids:
                    group.delivered_at[eid] = _now()
                out.append([name, [(eid, dict(by_id[eid])) for eid in ids]])
        return out

    async def xack(self, name: str, groupname: str, *ids: str) -> int:
        group = self.groups.get((name, groupname))
        if group is None:
            return 0
        acked = 0
        for pending in group.pending.values():
            for eid in ids:
                if eid in pending:
                    pending.remove(eid)
                    group.delivered_at.pop(eid, None)
                    acked += 1
        return acked

    async def xautoclaim(
        self,
        name: str,
        groupname: str,
        consumername: str,
        min_idle_time: int,
        start_id: str = "0-0",
        count: Optional[int] = None,
        justid: bool = False,
    ) -> List[Any]:
        """Move pending entries idle >= `min_idle_time` ms to `consumername` (Redis 7 reply shape)."""
        group = self.groups.get((name, groupname))
        if group is None:
            raise ResponseError(f"NOGROUP No such key '{name}' or consumer group '{groupname}'")
        by_id = dict(self.streams.get(name, []))
        limit = int(count) if count is not None else 100
        start = int(str(start_id).split("-")[0])
        now = _now()

        candidates = sorted(
            (eid for ids in group.pending.values() for eid in ids if int(eid.split("-")[0]) >= start),
            key=lambda eid: int(eid.split("-")[0]),
        )
        claimed: List[Tuple[str, Dict[str, Any]]] = []
        deleted: List[str] = []
        for eid in candidates:
            if len(claimed) >= limit:
                break
            if (now - group.delivered_at.get(eid, now)) * 1000 < int(min_idle_time):
                continue
            for ids in group.pending.values():
                if eid in ids:
                    ids.remove(eid)
            if eid not in by_id:
                group.delivered_at.pop(eid, None)
                deleted.append(eid)
                continue
            group.pending.setdefault(consumername, []).append(eid)
            group.delivered_at[eid] = now
            claimed.append((eid, dict(by_id[eid])))

        if justid:
            return ["0-0", [eid for eid, _f in claimed], deleted]
        return ["0-0", claimed, deleted]

    def xpending_ids(self, name: str, groupname: str) -> List[str]:
        """Test helper: every unacked entry id in the group."""
        group = self.groups.get((name, groupname))
        if group is None:
            return []
        return [eid for ids in group.pending.values() for eid in ids]


__all__ = ["MockRedisClient"]
