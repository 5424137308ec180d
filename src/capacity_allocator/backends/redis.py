# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
RedisBackend for Capacity Allocator

This module provides the RedisBackend that shares allocation state across
processes, using optimistic slot transactions committed by an atomic Lua script.

Key Features:
- Versioned slot transactions: reads are plain GETs, the commit is a single
  compare-and-set Lua script over the slot's version counter
- Conflicting commits write nothing and raise TransactionConflictError
- Automatic Lua script reload after Redis restarts (NoScriptError)
- JSON records validated through pydantic models
- Secondary indices (requester, slot, parent) maintained inside the commit
"""

import asyncio
import logging
import os
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any, ClassVar

from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError,
    NoScriptError,
    RedisError,
    TimeoutError,
)

from ..exceptions import (
    SlotExistsError,
    StorageUnavailableError,
    TransactionConflictError,
)
from ..types.booking import BookingRecord
from ..types.slot import Slot
from ..types.waitlist import Waitlist
from .base import BaseBackend, HealthCheckResult, SlotTransaction, order_slots

logger = logging.getLogger(__name__)

COMMIT_SCRIPT = "commit_slot_transaction"
CREATE_SLOTS_SCRIPT = "create_slots"


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class _RedisSlotTransaction(SlotTransaction):
    """Transaction that remembers the slot version it started from."""

    def __init__(
        self, backend: "RedisBackend", redis_client: Any, slot_id: str, version: int
    ) -> None:
        super().__init__(slot_id)
        self._backend = backend
        self._redis = redis_client
        self.version = version

    async def _load_slot(self) -> Slot | None:
        return await self._backend._read_slot(self._redis, self.slot_id)

    async def _load_booking(self, booking_id: str) -> BookingRecord | None:
        return await self._backend._read_booking(self._redis, booking_id)

    async def _load_waitlist(self) -> Waitlist | None:
        return await self._backend._read_waitlist(self._redis, self.slot_id)


class RedisBackend(BaseBackend):
    """
    A distributed Redis backend for capacity allocation.

    This backend uses:
    - One JSON value per slot, booking and waitlist
    - A version counter per slot; every commit increments it
    - Set-based indices for requester bookings, slot bookings and parent slots
    - An atomic Lua script for every commit and for batch slot creation

    Deployment Requirements:
    - Redis 2.6+ (EVALSHA)
    - Single-node or replicated Redis; the commit touches keys from several
      key families, so Redis Cluster is not supported
    """

    # Class-level Lua scripts loaded from files
    _lua_scripts: ClassVar[dict[str, str]] = {}

    @classmethod
    def _load_lua_scripts(cls) -> None:
        """Load Lua scripts from files at class level."""
        if cls._lua_scripts:
            return  # Already loaded

        lua_dir = Path(__file__).parent / "lua"

        for script_name in [COMMIT_SCRIPT, CREATE_SLOTS_SCRIPT]:
            script_path = lua_dir / f"{script_name}.lua"
            if script_path.exists():
                cls._lua_scripts[script_name] = script_path.read_text(encoding="utf-8")
            else:
                logger.warning(f"Lua script not found: {script_path}")

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "capacity_allocator",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the Redis backend.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to REDIS_URL
                environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured Redis client
            namespace: Namespace prefix for keys
            max_connections: Maximum connections in the pool
            socket_timeout: Connect and read timeout in seconds

        Environment Variables:
            REDIS_URL: Default Redis connection URL when redis_url parameter is not provided.
        """
        super().__init__(namespace)

        self.redis_url = (
            redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        )
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout

        # Redis client state
        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None
        self._connected = False
        self._connection_lock = asyncio.Lock()

        # Lua script SHAs
        self._script_shas: dict[str, str] = {}

        self._commits = 0
        self._conflicts = 0

        self.key_prefix = f"ca:{namespace}"

    # ==========================================================================
    # Key Construction
    # ==========================================================================

    def _slot_key(self, slot_id: str) -> str:
        return f"{self.key_prefix}:slot:{slot_id}"

    def _version_key(self, slot_id: str) -> str:
        return f"{self.key_prefix}:slot:{slot_id}:version"

    def _waitlist_key(self, slot_id: str) -> str:
        return f"{self.key_prefix}:slot:{slot_id}:waitlist"

    def _slot_bookings_key(self, slot_id: str) -> str:
        return f"{self.key_prefix}:slot:{slot_id}:bookings"

    def _booking_key(self, booking_id: str) -> str:
        return f"{self.key_prefix}:booking:{booking_id}"

    def _requester_bookings_key(self, requester_id: str) -> str:
        return f"{self.key_prefix}:requester:{requester_id}:bookings"

    def _parent_slots_key(self, parent_id: str) -> str:
        return f"{self.key_prefix}:parent:{parent_id}:slots"

    def _all_slots_key(self) -> str:
        return f"{self.key_prefix}:slots"

    # ==========================================================================
    # Connection and Scripts
    # ==========================================================================

    async def _ensure_connected(self) -> Any:
        """Return a connected client, creating it on first use."""
        if self._redis is not None and self._connected:
            return self._redis

        async with self._connection_lock:
            if self._redis is None:
                logger.info(f"Connecting to Redis for namespace '{self.namespace}'")
                self._redis = Redis.from_url(
                    self.redis_url,
                    max_connections=self.max_connections,
                    decode_responses=True,
                    socket_connect_timeout=self.socket_timeout,
                    socket_timeout=self.socket_timeout,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                self._owned_redis = True
            if not self._connected:
                try:
                    await self._redis.ping()
                    await self._load_scripts()
                except (ConnectionError, TimeoutError, RedisError) as e:
                    logger.error(f"Redis connection failed: {e}")
                    raise StorageUnavailableError(
                        f"Cannot connect to Redis: {e}"
                    ) from e
                self._connected = True
        return self._redis

    async def _load_scripts(self) -> None:
        """Load Lua scripts into Redis."""
        if not self._redis:
            raise RuntimeError("Redis client not initialized")

        self.__class__._load_lua_scripts()

        for script_name, script_source in self._lua_scripts.items():
            self._script_shas[script_name] = _as_str(
                await self._redis.script_load(script_source)
            )

    async def _evalsha_with_reload(
        self,
        redis_client: Any,
        script_name: str,
        num_keys: int,
        *args: Any,
    ) -> Any:
        """
        Run a loaded script by SHA, reloading it once if Redis has lost it.

        A restarted or flushed server answers NOSCRIPT; the script cache is
        rebuilt and the call repeated a single time. A second NoScriptError
        and every other Redis error propagate to the caller.
        """
        script_sha = self._script_shas.get(script_name)
        if not script_sha:
            await self._load_scripts()
            script_sha = self._script_shas[script_name]

        try:
            return await redis_client.evalsha(script_sha, num_keys, *args)
        except NoScriptError:
            logger.warning(
                f"Script '{script_name}' not found in Redis (SHA: {script_sha}). "
                f"Reloading all Lua scripts..."
            )
            self._script_shas.clear()
            await self._load_scripts()

            # Retry with new SHA (only once to prevent infinite loop)
            new_sha = self._script_shas[script_name]
            logger.info(f"Scripts reloaded. Retrying with new SHA: {new_sha}")
            return await redis_client.evalsha(new_sha, num_keys, *args)

    # ==========================================================================
    # Record Reads
    # ==========================================================================

    async def _read_slot(self, redis_client: Any, slot_id: str) -> Slot | None:
        raw = await redis_client.get(self._slot_key(slot_id))
        return Slot.model_validate_json(raw) if raw else None

    async def _read_booking(
        self, redis_client: Any, booking_id: str
    ) -> BookingRecord | None:
        raw = await redis_client.get(self._booking_key(booking_id))
        return BookingRecord.model_validate_json(raw) if raw else None

    async def _read_waitlist(self, redis_client: Any, slot_id: str) -> Waitlist | None:
        raw = await redis_client.get(self._waitlist_key(slot_id))
        return Waitlist.model_validate_json(raw) if raw else None

    async def _read_bookings(
        self, redis_client: Any, index_key: str
    ) -> list[BookingRecord]:
        booking_ids = sorted(_as_str(b) for b in await redis_client.smembers(index_key))
        if not booking_ids:
            return []
        raws = await redis_client.mget([self._booking_key(b) for b in booking_ids])
        records = [BookingRecord.model_validate_json(raw) for raw in raws if raw]
        records.sort(key=lambda r: (r.created_at, r.booking_id))
        return records

    # ==========================================================================
    # Transactions
    # ==========================================================================

    async def _begin(self, slot_id: str) -> SlotTransaction:
        redis_client = await self._ensure_connected()
        try:
            raw_version = await redis_client.get(self._version_key(slot_id))
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Redis error opening transaction on {slot_id}: {e}")
            raise StorageUnavailableError(str(e)) from e
        version = int(raw_version) if raw_version else 0
        return _RedisSlotTransaction(self, redis_client, slot_id, version)

    def _build_writes(self, tx: SlotTransaction) -> list[tuple[str, str, str]]:
        """Translate staged changes into (key, op, payload) triples."""
        writes: list[tuple[str, str, str]] = []
        slot_id = tx.slot_id

        if tx.slot_dirty:
            staged = tx.staged_slot
            if staged is None:
                writes.append((self._slot_key(slot_id), "del", ""))
                writes.append((self._all_slots_key(), "srem", slot_id))
                if tx.original_slot is not None:
                    writes.append(
                        (
                            self._parent_slots_key(tx.original_slot.parent.parent_id),
                            "srem",
                            slot_id,
                        )
                    )
            else:
                writes.append((self._slot_key(slot_id), "set", staged.model_dump_json()))
                writes.append((self._all_slots_key(), "sadd", slot_id))
                writes.append(
                    (self._parent_slots_key(staged.parent.parent_id), "sadd", slot_id)
                )

        for booking_id, record in tx.staged_bookings.items():
            writes.append(
                (self._booking_key(booking_id), "set", record.model_dump_json())
            )
            writes.append(
                (self._requester_bookings_key(record.requester_id), "sadd", booking_id)
            )
            writes.append((self._slot_bookings_key(slot_id), "sadd", booking_id))

        if tx.waitlist_dirty:
            waitlist = tx.staged_waitlist
            if waitlist is None:
                writes.append((self._waitlist_key(slot_id), "del", ""))
            else:
                writes.append(
                    (self._waitlist_key(slot_id), "set", waitlist.model_dump_json())
                )

        return writes

    async def _commit(self, tx: SlotTransaction) -> None:
        if not isinstance(tx, _RedisSlotTransaction):
            raise TypeError(f"Unexpected transaction type: {type(tx).__name__}")

        writes = self._build_writes(tx)
        keys = [self._version_key(tx.slot_id)] + [key for key, _, _ in writes]
        args: list[Any] = [tx.version]
        for _, op, payload in writes:
            args.extend((op, payload))

        try:
            result = await self._evalsha_with_reload(
                tx._redis, COMMIT_SCRIPT, len(keys), *keys, *args
            )
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis unavailable committing slot {tx.slot_id}: {e}")
            raise StorageUnavailableError(str(e)) from e
        except RedisError as e:
            logger.error(f"Redis error committing slot {tx.slot_id}: {e}")
            raise StorageUnavailableError(str(e)) from e

        committed, version = int(result[0]), int(result[1])
        if not committed:
            self._conflicts += 1
            logger.debug(
                f"Version conflict on slot {tx.slot_id}: "
                f"expected {tx.version}, found {version}"
            )
            raise TransactionConflictError(tx.slot_id)

        self._commits += 1
        tx.version = version

    async def create_slots(self, slots: Sequence[Slot]) -> None:
        """Write a batch of new slots in one script call, all or none."""
        if not slots:
            return

        redis_client = await self._ensure_connected()
        keys = [self._all_slots_key()]
        args: list[Any] = []
        for slot in slots:
            keys.extend(
                (
                    self._slot_key(slot.slot_id),
                    self._version_key(slot.slot_id),
                    self._parent_slots_key(slot.parent.parent_id),
                )
            )
            args.extend((slot.slot_id, slot.model_dump_json()))

        try:
            result = await self._evalsha_with_reload(
                redis_client, CREATE_SLOTS_SCRIPT, len(keys), *keys, *args
            )
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Redis error creating {len(slots)} slots: {e}")
            raise StorageUnavailableError(str(e)) from e

        if not int(result[0]):
            raise SlotExistsError(_as_str(result[1]))
        self._commits += 1

    # ==========================================================================
    # Query Surface
    # ==========================================================================

    async def _query(self, operation: str, coro_factory: Any) -> Any:
        redis_client = await self._ensure_connected()
        try:
            return await coro_factory(redis_client)
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise StorageUnavailableError(str(e)) from e

    async def get_slot(self, slot_id: str) -> Slot | None:
        return await self._query(
            "get_slot", lambda r: self._read_slot(r, slot_id)
        )

    async def list_slots(
        self, parent_id: str | None = None, available_only: bool = False
    ) -> list[Slot]:
        index_key = (
            self._all_slots_key()
            if parent_id is None
            else self._parent_slots_key(parent_id)
        )

        async def _list(redis_client: Any) -> list[Slot]:
            slot_ids = [_as_str(s) for s in await redis_client.smembers(index_key)]
            if not slot_ids:
                return []
            raws = await redis_client.mget([self._slot_key(s) for s in slot_ids])
            slots = [Slot.model_validate_json(raw) for raw in raws if raw]
            return order_slots(slots, available_only)

        return await self._query("list_slots", _list)

    async def get_booking(self, booking_id: str) -> BookingRecord | None:
        return await self._query(
            "get_booking", lambda r: self._read_booking(r, booking_id)
        )

    async def list_bookings_for_requester(
        self, requester_id: str
    ) -> list[BookingRecord]:
        return await self._query(
            "list_bookings_for_requester",
            lambda r: self._read_bookings(r, self._requester_bookings_key(requester_id)),
        )

    async def list_bookings_for_slot(self, slot_id: str) -> list[BookingRecord]:
        return await self._query(
            "list_bookings_for_slot",
            lambda r: self._read_bookings(r, self._slot_bookings_key(slot_id)),
        )

    async def get_waitlist(self, slot_id: str) -> Waitlist | None:
        return await self._query(
            "get_waitlist", lambda r: self._read_waitlist(r, slot_id)
        )

    # ==========================================================================
    # Lifecycle and Monitoring
    # ==========================================================================

    async def clear(self) -> None:
        """Clear all keys in this backend's namespace.

        Uses SCAN instead of KEYS to avoid blocking Redis during large keyspace scans.
        """
        redis_client = await self._ensure_connected()
        pattern = f"{self.key_prefix}:*"
        try:
            cursor = 0
            while True:
                cursor, keys = await redis_client.scan(cursor, match=pattern, count=100)
                if keys:
                    await redis_client.delete(*keys)
                if cursor == 0:
                    break
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Redis error during clear: {e}")
            raise StorageUnavailableError(str(e)) from e

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the backend."""
        try:
            redis_client = await self._ensure_connected()

            test_key = f"{self.key_prefix}:health_check_{int(time.time())}"
            await redis_client.set(test_key, "test", ex=60)
            result = await redis_client.get(test_key)
            await redis_client.delete(test_key)

            info = await redis_client.info()

            return HealthCheckResult(
                healthy=_as_str(result) == "test",
                backend_type="redis",
                namespace=self.namespace,
                metadata={
                    "redis_url": self.redis_url,
                    "connected": self._connected,
                    "redis_version": info.get("redis_version"),
                    "used_memory": info.get("used_memory_human"),
                    "connected_clients": info.get("connected_clients"),
                },
            )
        except Exception as e:
            return HealthCheckResult(
                healthy=False,
                backend_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

    async def get_all_stats(self) -> dict[str, Any]:
        """Get all statistics from the backend."""
        stats: dict[str, Any] = {
            "backend_type": "redis",
            "namespace": self.namespace,
            "connected": self._connected,
            "commits": self._commits,
            "conflicts": self._conflicts,
        }
        if self._connected and self._redis is not None:
            try:
                stats["slots"] = int(await self._redis.scard(self._all_slots_key()))
            except (ConnectionError, TimeoutError, RedisError) as e:
                logger.warning(f"Could not read slot count: {e}")
        return stats

    async def start(self) -> None:
        await self._ensure_connected()

    async def stop(self) -> None:
        """Close the client if this backend created it."""
        if self._redis is not None and self._owned_redis:
            try:
                await asyncio.wait_for(self._redis.aclose(), timeout=2.5)
            except asyncio.TimeoutError:
                logger.warning("Redis connection close timed out")
            except (ConnectionError, RedisError) as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._redis = None
        self._connected = False
