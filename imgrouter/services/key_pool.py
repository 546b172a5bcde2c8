"""Key pool management: weighted round-robin selection, suspension, persistence.

Design:
- The pool owns every KeyRecord plus the rotation state (cursor, cursor_usage)
- A key with rotation_weight w is handed out w times in a row before the cursor moves
- Suspension expires lazily: checked at the entry points of this class only
- Each mutation holds the lock across change + save; a failed save restores the
  previous in-memory state
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Protocol

from imgrouter.api.schemas import GatewaySettings, ModelSizeConfig, Provider
from imgrouter.core.classifier import classify, mask_credential
from imgrouter.core.errors import KeyNotFound, PersistenceError, ValidationError

logger = logging.getLogger("imgrouter.key_pool")

SUSPENSION_SECONDS = 24 * 60 * 60


@dataclass
class KeyRecord:
    """A pooled provider credential."""
    id: str
    name: str
    credential: str
    provider: Provider
    rotation_weight: int = 1
    usage_count: int = 0
    suspended: bool = False
    suspended_until: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def expire_suspension(self, now: float) -> bool:
        """Clear a lapsed suspension. Returns True if the record changed."""
        if self.suspended and self.suspended_until is not None and now >= self.suspended_until:
            self.suspended = False
            self.suspended_until = None
            return True
        return False

    def to_dict(self, masked: bool = True) -> dict:
        data = asdict(self)
        data["provider"] = self.provider.value
        if masked:
            data["value"] = mask_credential(data.pop("credential"))
        return data


@dataclass
class PoolSnapshot:
    records: list[KeyRecord] = field(default_factory=list)
    cursor: int = 0
    cursor_usage: int = 0
    settings: GatewaySettings = field(default_factory=GatewaySettings)


class PoolStore(Protocol):
    async def load(self) -> Optional[PoolSnapshot]: ...

    async def save(self, snapshot: PoolSnapshot) -> bool: ...


def _new_key_id() -> str:
    return uuid.uuid4().hex[:16]


class KeyPoolManager:
    """Owns the key pool and the runtime settings persisted with it."""

    def __init__(
        self,
        store: PoolStore,
        snapshot: Optional[PoolSnapshot] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._state = snapshot or PoolSnapshot()
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    async def from_store(
        cls,
        store: PoolStore,
        default_settings: Optional[GatewaySettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> "KeyPoolManager":
        snapshot = await store.load()
        if snapshot is None:
            snapshot = PoolSnapshot(settings=default_settings or GatewaySettings())
            logger.info("Config store empty, starting with an empty key pool")
        else:
            logger.info("Loaded %d API keys from config store", len(snapshot.records))
        return cls(store, snapshot, clock)

    # ── Selection ──────────────────────────────────────────────────────

    async def select_next(self, provider_filter: Optional[str] = None) -> Optional[KeyRecord]:
        """Return the next key by weighted round-robin, or None if nothing is eligible.

        provider_filter: a Provider (or its value); None or "auto" means any,
        an unrecognised value selects nothing.
        Raises PersistenceError if the updated pool cannot be saved.
        """
        async with self._lock:
            backup = self._backup()
            self._expire_suspensions()

            eligible = [r for r in self._state.records if not r.suspended]
            if provider_filter and provider_filter != "auto":
                try:
                    wanted = Provider(provider_filter)
                except ValueError:
                    logger.warning("Unknown provider filter %r, no key selected", provider_filter)
                    return None
                eligible = [r for r in eligible if r.provider == wanted]

            if not eligible:
                logger.debug("No eligible key (filter=%s)", provider_filter or "auto")
                return None

            if self._state.cursor >= len(eligible):
                self._state.cursor = 0

            record = eligible[self._state.cursor]
            record.usage_count += 1
            self._state.cursor_usage += 1

            if self._state.cursor_usage >= record.rotation_weight:
                self._state.cursor = (self._state.cursor + 1) % len(eligible)
                self._state.cursor_usage = 0

            await self._persist(backup)

            logger.info(
                "Selected key %s (%s, provider=%s, used=%d)",
                record.name, mask_credential(record.credential),
                record.provider.value, record.usage_count,
            )
            return copy.copy(record)

    # ── Key mutations ──────────────────────────────────────────────────

    async def add_key(
        self,
        name: str,
        credential: str,
        provider: Optional[Provider] = None,
        rotation_weight: int = 1,
    ) -> KeyRecord:
        _check_weight(rotation_weight)
        record = KeyRecord(
            id=_new_key_id(),
            name=name,
            credential=credential,
            provider=provider or classify(credential),
            rotation_weight=rotation_weight,
            created_at=self._clock(),
        )
        async with self._lock:
            backup = self._backup()
            self._state.records.append(record)
            await self._persist(backup)

        logger.info(
            "Added key %s (%s, provider=%s, weight=%d)",
            name, mask_credential(credential), record.provider.value, rotation_weight,
        )
        return copy.copy(record)

    async def delete_key(self, key_id: str) -> None:
        async with self._lock:
            self._find(key_id)
            backup = self._backup()
            self._state.records = [r for r in self._state.records if r.id != key_id]
            await self._persist(backup)
        logger.info("Deleted key %s", key_id)

    async def suspend(self, key_id: str) -> KeyRecord:
        """Ban a key for a fixed 24 hours."""
        async with self._lock:
            backup = self._backup()
            record = self._find(key_id)
            record.suspended = True
            record.suspended_until = self._clock() + SUSPENSION_SECONDS
            await self._persist(backup)
            logger.warning(
                "Key %s (%s) suspended until %.0f",
                record.name, mask_credential(record.credential), record.suspended_until,
            )
            return copy.copy(record)

    async def release(self, key_id: str) -> KeyRecord:
        async with self._lock:
            backup = self._backup()
            record = self._find(key_id)
            record.suspended = False
            record.suspended_until = None
            await self._persist(backup)
            logger.info("Key %s (%s) released", record.name, mask_credential(record.credential))
            return copy.copy(record)

    async def update_weight(self, key_id: str, rotation_weight: int) -> KeyRecord:
        _check_weight(rotation_weight)
        async with self._lock:
            backup = self._backup()
            record = self._find(key_id)
            record.rotation_weight = rotation_weight
            await self._persist(backup)
            logger.info("Key %s rotation weight -> %d", record.name, rotation_weight)
            return copy.copy(record)

    async def import_keys(self, entries: list[dict]) -> tuple[int, list[str]]:
        """Append keys from parsed YAML/JSON entries. Returns (imported, errors)."""
        errors: list[str] = []
        new_records: list[KeyRecord] = []
        for i, raw in enumerate(entries):
            if not isinstance(raw, dict):
                errors.append(f"Entry {i}: not a mapping")
                continue
            credential = str(raw.get("value") or raw.get("credential") or "").strip()
            if not credential:
                errors.append(f"Entry {i}: missing value")
                continue
            try:
                provider = Provider(raw["provider"]) if raw.get("provider") else classify(credential)
                weight = int(raw.get("rotation_weight", raw.get("roundRobin", 1)))
                _check_weight(weight)
            except (TypeError, ValueError, ValidationError) as exc:
                errors.append(f"Entry {i}: {exc}")
                continue
            new_records.append(KeyRecord(
                id=_new_key_id(),
                name=str(raw.get("name") or f"key-{i + 1}"),
                credential=credential,
                provider=provider,
                rotation_weight=weight,
                created_at=self._clock(),
            ))

        if new_records:
            async with self._lock:
                backup = self._backup()
                existing = {r.credential for r in self._state.records}
                for record in new_records:
                    if record.credential in existing:
                        errors.append(f"Duplicate key skipped: {mask_credential(record.credential)}")
                        continue
                    existing.add(record.credential)
                    self._state.records.append(record)
                imported = len(self._state.records) - len(backup.records)
                await self._persist(backup)
        else:
            imported = 0

        logger.info("Imported %d keys (%d errors)", imported, len(errors))
        return imported, errors

    # ── Settings ───────────────────────────────────────────────────────

    @property
    def settings(self) -> GatewaySettings:
        return self._state.settings.model_copy(deep=True)

    async def update_settings(self, changes: dict[str, Any]) -> GatewaySettings:
        active = changes.get("active_provider")
        if active is not None and active != "auto":
            try:
                Provider(active)
            except ValueError:
                raise ValidationError(f"Unknown provider: {active}")
        timeout = changes.get("api_timeout")
        if timeout is not None and (isinstance(timeout, bool) or timeout <= 0):
            raise ValidationError(f"api_timeout must be a positive number of seconds, got {timeout!r}")
        async with self._lock:
            backup = self._backup()
            self._state.settings = self._state.settings.model_copy(update=changes)
            await self._persist(backup)
        logger.info("Settings updated: %s", sorted(changes))
        return self.settings

    async def update_model_sizes(self, sizes: dict[str, ModelSizeConfig]) -> dict[str, ModelSizeConfig]:
        async with self._lock:
            backup = self._backup()
            merged = dict(self._state.settings.model_sizes)
            merged.update(sizes)
            self._state.settings = self._state.settings.model_copy(update={"model_sizes": merged})
            await self._persist(backup)
        logger.info("Model sizes updated: %s", sorted(sizes))
        return self.settings.model_sizes

    # ── Reads ──────────────────────────────────────────────────────────

    async def list_keys(self) -> list[KeyRecord]:
        async with self._lock:
            self._expire_suspensions()
            return [copy.copy(r) for r in self._state.records]

    async def get_key(self, key_id: str) -> KeyRecord:
        async with self._lock:
            self._expire_suspensions()
            return copy.copy(self._find(key_id))

    async def stats(self) -> dict:
        records = await self.list_keys()
        by_provider: dict[str, int] = {}
        for r in records:
            by_provider[r.provider.value] = by_provider.get(r.provider.value, 0) + 1
        banned = sum(1 for r in records if r.suspended)
        return {
            "total_keys": len(records),
            "active_keys": len(records) - banned,
            "banned_keys": banned,
            "total_usage": sum(r.usage_count for r in records),
            "by_provider": by_provider,
        }

    def snapshot(self) -> PoolSnapshot:
        return self._backup()

    # ── Internals ──────────────────────────────────────────────────────

    def _find(self, key_id: str) -> KeyRecord:
        for r in self._state.records:
            if r.id == key_id:
                return r
        raise KeyNotFound(f"Key {key_id} not found")

    def _expire_suspensions(self) -> bool:
        now = self._clock()
        changed = False
        for r in self._state.records:
            if r.expire_suspension(now):
                changed = True
                logger.info("Key %s suspension expired", r.name)
        return changed

    def _backup(self) -> PoolSnapshot:
        return copy.deepcopy(self._state)

    async def _persist(self, backup: PoolSnapshot) -> None:
        """Save current state; on failure restore `backup` and raise PersistenceError.

        An exception escaping the store (including cancellation) also restores
        `backup` before propagating.
        """
        try:
            saved = await self._store.save(self._backup())
        except BaseException:
            self._state = backup
            logger.error("Key pool save raised, in-memory change rolled back")
            raise
        if saved:
            return
        self._state = backup
        logger.error("Failed to persist key pool, in-memory change rolled back")
        raise PersistenceError("Failed to save configuration")


def _check_weight(rotation_weight: int) -> None:
    if not isinstance(rotation_weight, int) or isinstance(rotation_weight, bool) or rotation_weight < 1:
        raise ValidationError(f"rotation_weight must be an integer >= 1, got {rotation_weight!r}")
