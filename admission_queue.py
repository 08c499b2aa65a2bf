"""
Per-domain admission queue.

Grants at most ``max_concurrent_per_domain`` scraping slots per domain.
Requests that arrive while a domain is busy are buffered; each buffered
waiter holds a one-shot future (and optionally a callback) that is resolved
exactly once: with the in-flight scrape's result when its slot is released,
or with an explicit failure on timeout, stale lock, shutdown or manual clear.

The queue also buffers deferred updates (e.g. profile updates) and drains
them periodically through an injected applier. Both the queue snapshot and
the update buffer are persisted through ``CoalescingJsonWriter``.
"""

import asyncio
import inspect
import logging
import time
from typing import (
    Any, Awaitable, Callable, Dict, Generic, List, Optional, Set, Type, TypeVar,
)
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from atomic_fs import (
    CoalescingJsonWriter,
    cleanup_temp_files,
    load_json_or_backup,
    write_json_atomic,
)
from config import CoordinatorConfig
from errors import PersistenceError
from models import (
    NotificationSource,
    ProfileUpdate,
    QueueEntry,
    SlotDecision,
    WaiterNotification,
    is_degraded_result,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"

UpdateT = TypeVar("UpdateT", bound=BaseModel)
Applier = Callable[[str, Any], Awaitable[Any]]
WaiterCallback = Callable[[WaiterNotification], Any]


def now_ms() -> int:
    return int(time.time() * 1000)


class PendingWaiter:
    """A buffered requester waiting for a domain's in-flight result."""

    __slots__ = ("requester_id", "enqueued_at", "future", "callback", "schedule")

    def __init__(
        self,
        requester_id: str,
        enqueued_at: int,
        future: asyncio.Future,
        schedule: Callable[[str, Awaitable[Any]], Any],
        callback: Optional[WaiterCallback] = None,
    ):
        self.requester_id = requester_id
        self.enqueued_at = enqueued_at
        self.future = future
        self.callback = callback
        self.schedule = schedule

    @property
    def notified(self) -> bool:
        return self.future.done()

    def notify(self, notification: WaiterNotification) -> bool:
        """Resolve the waiter once. Returns False if it was already resolved."""
        if self.future.done():
            return False
        self.future.set_result(notification)

        if self.callback is not None:
            try:
                outcome = self.callback(notification)
                if inspect.isawaitable(outcome):
                    self.schedule(self.requester_id, outcome)
            except Exception as e:
                logger.error("Waiter callback for %s raised: %s", self.requester_id, e)
        return True


class DomainLock:
    """Marks which slot owns a domain's capacity, for stale-lock recovery."""

    __slots__ = ("slot_id", "timestamp")

    def __init__(self, slot_id: str, timestamp: int):
        self.slot_id = slot_id
        self.timestamp = timestamp


class AdmissionQueue(Generic[UpdateT]):
    """
    Keyed admission queue parameterized by the buffered update type.

    All in-memory mutation for an operation completes before its first
    ``await``, so no extra locking is needed on a single event loop.
    """

    def __init__(
        self,
        config: CoordinatorConfig,
        queue_file: str,
        updates_file: str,
        update_model: Type[UpdateT],
        applier: Optional[Applier] = None,
        clock: Optional[Callable[[], int]] = None,
        name: str = "admission-queue",
    ):
        self.config = config
        self.name = name
        self.update_model = update_model
        self.applier = applier
        self._clock = clock or now_ms

        self.queue: Dict[str, QueueEntry] = {}
        self.waiters: Dict[str, List[PendingWaiter]] = {}
        self.callbacks: Dict[str, List[PendingWaiter]] = {}
        self.locks: Dict[str, DomainLock] = {}
        self.pending_updates: Dict[str, UpdateT] = {}

        self._queue_writer = CoalescingJsonWriter(queue_file, self._queue_snapshot)
        self._updates_writer = CoalescingJsonWriter(updates_file, self._updates_snapshot)
        self._tasks: List[asyncio.Task] = []
        self.callback_tasks: Set[asyncio.Task] = set()
        self._initialized = False
        self.logger = logging.getLogger(self.__class__.__name__)

    # -------- persistence --------

    def _empty_document(self, key: str) -> Dict[str, Any]:
        return {key: {}, "lastSaved": self._clock(), "version": SNAPSHOT_VERSION, "size": 0}

    def _queue_snapshot(self) -> Dict[str, Any]:
        return {
            "queue": {domain: entry.model_dump(mode="json") for domain, entry in self.queue.items()},
            "lastSaved": self._clock(),
            "version": SNAPSHOT_VERSION,
            "size": len(self.queue),
        }

    def _updates_snapshot(self) -> Dict[str, Any]:
        return {
            "updates": {key: update.model_dump(mode="json") for key, update in self.pending_updates.items()},
            "lastSaved": self._clock(),
            "version": SNAPSHOT_VERSION,
            "size": len(self.pending_updates),
        }

    def _restore_queue(self, document: Dict[str, Any]) -> int:
        restored = 0
        for domain, raw in (document.get("queue") or {}).items():
            try:
                entry = QueueEntry.model_validate(raw)
            except ValidationError as e:
                self.logger.warning("Skipping invalid queue entry %s: %s", domain, e)
                continue
            self.queue[domain] = entry
            if entry.active_slot_ids:
                # orphaned slots are reclaimed by stale-lock cleanup
                newest = sorted(entry.active_slot_ids)[-1]
                self.locks[domain] = DomainLock(newest, entry.last_start_time or self._clock())
            restored += 1
        return restored

    def _restore_updates(self, document: Dict[str, Any]) -> int:
        restored = 0
        for key, raw in (document.get("updates") or {}).items():
            try:
                self.pending_updates[key] = self.update_model.model_validate(raw)
                restored += 1
            except ValidationError as e:
                self.logger.warning("Skipping invalid buffered update %s: %s", key, e)
        return restored

    async def init(self):
        """Load persisted state, apply buffered updates, then reset both files."""
        if self._initialized:
            return

        for writer in (self._queue_writer, self._updates_writer):
            cleanup_temp_files(writer.path)

        queue_doc = await load_json_or_backup(self._queue_writer.path, self._empty_document("queue"), "queue")
        updates_doc = await load_json_or_backup(
            self._updates_writer.path, self._empty_document("updates"), "updates"
        )

        restored_entries = self._restore_queue(queue_doc)
        restored_updates = self._restore_updates(updates_doc)

        try:
            await write_json_atomic(self._queue_writer.path, self._empty_document("queue"))
            await write_json_atomic(self._updates_writer.path, self._empty_document("updates"))
        except PersistenceError as e:
            self.logger.error("Failed to reset persisted queue state: %s", e)

        self._initialized = True
        self.logger.info(
            "Admission queue initialized",
            extra={"queue": self.name, "entries": restored_entries, "updates": restored_updates},
        )

        if restored_updates:
            await self.process_pending_updates()

    async def save(self) -> bool:
        queue_ok = await self._queue_writer.save()
        updates_ok = await self._updates_writer.save()
        return queue_ok and updates_ok

    # -------- slots --------

    def _new_request_id(self, now: int) -> str:
        return f"req_{now}_{uuid4().hex[:8]}"

    def _schedule_callback(self, requester_id: str, outcome: Awaitable[Any]):
        task = asyncio.ensure_future(outcome)
        self.callback_tasks.add(task)

        def _done(finished: asyncio.Task):
            self.callback_tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                self.logger.error("Waiter callback for %s raised: %s", requester_id, error)

        task.add_done_callback(_done)

    async def request_slot(
        self,
        domain: str,
        requester_id: Optional[str] = None,
        callback: Optional[WaiterCallback] = None,
    ) -> SlotDecision:
        """Grant a slot on ``domain`` or buffer the requester."""
        now = self._clock()
        requester_id = requester_id or self._new_request_id(now)

        entry = self.queue.get(domain)
        if entry is None:
            entry = QueueEntry(first_request_time=now)
            self.queue[domain] = entry

        if entry.active_count >= self.config.max_concurrent_per_domain:
            future = asyncio.get_running_loop().create_future()
            waiter = PendingWaiter(requester_id, now, future, self._schedule_callback, callback)
            self.waiters.setdefault(domain, []).append(waiter)
            if callback is not None:
                self.callbacks.setdefault(domain, []).append(waiter)

            position = len(self.waiters[domain])
            self.logger.info(
                "Request buffered",
                extra={"domain": domain, "position": position, "requester": requester_id},
            )
            return SlotDecision(
                allowed=False,
                reason="buffered",
                active_count=entry.active_count,
                queue_position=position,
                requester_id=requester_id,
                message=f"Domain busy, buffered at position {position}",
                result=future,
            )

        slot_id = f"{domain}_{now}_{requester_id}"
        while slot_id in entry.active_slot_ids:
            slot_id = f"{domain}_{now}_{requester_id}_{uuid4().hex[:4]}"

        entry.active_slot_ids.add(slot_id)
        entry.last_start_time = now
        self.locks[domain] = DomainLock(slot_id, now)

        self.logger.info(
            "Slot granted",
            extra={"domain": domain, "active": entry.active_count},
        )
        await self._queue_writer.save()
        return SlotDecision(
            allowed=True,
            slot_id=slot_id,
            active_count=entry.active_count,
            requester_id=requester_id,
        )

    def _broadcast(
        self,
        domain: str,
        success: bool,
        source: NotificationSource,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        degraded: bool = False,
    ) -> int:
        waiters = self.waiters.pop(domain, [])
        self.callbacks.pop(domain, None)
        notified_at = self._clock()

        notified = 0
        for waiter in waiters:
            notification = WaiterNotification(
                success=success,
                source=source,
                data=data,
                error=error,
                requester_id=waiter.requester_id,
                notified_at=notified_at,
                degraded=degraded,
            )
            if waiter.notify(notification):
                notified += 1

        if notified:
            self.logger.info(
                "Notified buffered waiters",
                extra={"domain": domain, "count": notified, "source": source},
            )
        return notified

    async def release_slot(
        self,
        domain: str,
        slot_id: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Release ``slot_id`` and broadcast the outcome to every buffered waiter.

        Releasing an unknown or already released slot is a no-op.

        Returns:
            Number of waiters notified
        """
        entry = self.queue.get(domain)
        if entry is None or slot_id not in entry.active_slot_ids:
            self.logger.debug("Ignoring release of unknown slot %s", slot_id)
            return 0

        entry.active_slot_ids.discard(slot_id)
        entry.last_end_time = self._clock()

        if result is None:
            notified = self._broadcast(domain, False, "scraping-failure", error="Scraping failed")
        elif is_degraded_result(result):
            notified = self._broadcast(
                domain, False, "degraded", data=result,
                error=result.get("_status_reason"), degraded=True,
            )
        else:
            notified = self._broadcast(domain, True, "scraping-success", data=result)

        if entry.active_count == 0:
            self.locks.pop(domain, None)

        await self._queue_writer.save()
        return notified

    # -------- cleanup --------

    async def cleanup_expired_queue(self) -> Dict[str, int]:
        """Force-release stale locks and drop long-idle queue entries."""
        now = self._clock()
        stale_locks = [
            domain for domain, lock in self.locks.items()
            if now - lock.timestamp > self.config.lock_stale_ms
        ]
        for domain in stale_locks:
            lock = self.locks.pop(domain)
            entry = self.queue.get(domain)
            if entry is not None:
                entry.active_slot_ids.clear()
                entry.last_end_time = now
            self._broadcast(domain, False, "lock-expired", error="Domain lock expired")
            self.logger.warning(
                "Force-released stale lock",
                extra={"domain": domain, "slot": lock.slot_id, "age_ms": now - lock.timestamp},
            )

        idle = []
        for domain, entry in self.queue.items():
            if entry.active_count:
                continue
            last_activity = max(
                entry.last_end_time or 0,
                entry.last_start_time or 0,
                entry.first_request_time,
            )
            if now - last_activity > self.config.queue_idle_ttl_ms:
                idle.append(domain)

        for domain in idle:
            self._broadcast(domain, False, "queue-expired", error="Queue entry expired")
            del self.queue[domain]
            self.locks.pop(domain, None)

        if stale_locks or idle:
            self.logger.info(
                "Queue cleanup",
                extra={"stale_locks": len(stale_locks), "expired_entries": len(idle)},
            )
            await self._queue_writer.save()
        return {"stale_locks": len(stale_locks), "expired_entries": len(idle)}

    async def cleanup_expired_callbacks(self) -> int:
        """Time out every waiter older than the callback TTL."""
        now = self._clock()
        ttl = self.config.callback_ttl_ms
        expired = 0

        for domain in list(self.waiters):
            keep = []
            for waiter in self.waiters[domain]:
                if now - waiter.enqueued_at > ttl:
                    waiter.notify(WaiterNotification(
                        success=False,
                        source="timeout",
                        error="Callback timeout",
                        requester_id=waiter.requester_id,
                        notified_at=now,
                    ))
                    expired += 1
                elif not waiter.notified:
                    keep.append(waiter)

            if keep:
                self.waiters[domain] = keep
                self.callbacks[domain] = [w for w in keep if w.callback is not None]
                if not self.callbacks[domain]:
                    del self.callbacks[domain]
            else:
                self.waiters.pop(domain, None)
                self.callbacks.pop(domain, None)

        if expired:
            self.logger.info("Expired %d buffered waiters", expired)
        return expired

    # -------- deferred updates --------

    async def queue_update(self, key: str, update: UpdateT) -> bool:
        """Buffer ``update`` for ``key`` (merged with any pending one) and persist."""
        existing = self.pending_updates.get(key)
        if existing is not None:
            update = existing.model_copy(update=update.model_dump(exclude_none=True))
        self.pending_updates[key] = update
        return await self._updates_writer.save()

    async def process_pending_updates(self) -> int:
        """Apply every buffered update through the applier, then clear the buffer."""
        if not self.pending_updates:
            return 0
        if self.applier is None:
            self.logger.warning("No applier configured, keeping %d updates", len(self.pending_updates))
            return 0

        batch, self.pending_updates = self.pending_updates, {}
        applied = 0
        for key, update in batch.items():
            try:
                await self.applier(key, update)
                applied += 1
            except Exception as e:
                self.logger.error("Failed to apply update for %s: %s", key, e)

        await self._updates_writer.save()
        self.logger.info("Applied %d/%d buffered updates", applied, len(batch))
        return applied

    # -------- lifecycle --------

    async def _run_periodically(self, interval_ms: int, job: Callable[[], Awaitable[Any]], label: str):
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                await job()
            except Exception as e:
                self.logger.error("%s failed: %s", label, e)

    async def _flush(self):
        await self.process_pending_updates()
        await self._queue_writer.save()

    async def start(self):
        """Initialize and launch the flush and cleanup timers."""
        await self.init()
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run_periodically(
                self.config.save_interval_ms, self._flush, "flush")),
            asyncio.create_task(self._run_periodically(
                self.config.queue_cleanup_interval_ms, self.cleanup_expired_queue, "queue cleanup")),
            asyncio.create_task(self._run_periodically(
                self.config.callback_cleanup_interval_ms, self.cleanup_expired_callbacks, "callback cleanup")),
        ]
        self.logger.info("Admission queue started", extra={"queue": self.name})

    def _notify_everyone(self, source: NotificationSource, error: str) -> int:
        return sum(
            self._broadcast(domain, False, source, error=error)
            for domain in list(self.waiters)
        )

    async def stop(self):
        """Cancel timers, fail remaining waiters and persist final state."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        notified = self._notify_everyone("shutdown", "Queue shutting down")
        if self.callback_tasks:
            await asyncio.gather(*list(self.callback_tasks), return_exceptions=True)
        await self.save()
        self.logger.info(
            "Admission queue stopped",
            extra={"queue": self.name, "notified": notified},
        )

    async def clear(self) -> int:
        """Drop every entry, lock and waiter. Waiters get a manual-clear failure."""
        notified = self._notify_everyone("manual-clear", "Queue cleared")
        self.queue.clear()
        self.locks.clear()
        await self._queue_writer.save()
        self.logger.info("Queue cleared", extra={"queue": self.name, "notified": notified})
        return notified

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        domains = {}
        for domain, entry in self.queue.items():
            lock = self.locks.get(domain)
            domains[domain] = {
                "active_count": entry.active_count,
                "waiting": len(self.waiters.get(domain, [])),
                "callbacks": len(self.callbacks.get(domain, [])),
                "lock_age_ms": now - lock.timestamp if lock else None,
            }
        return {
            "name": self.name,
            "domains": len(self.queue),
            "active_slots": sum(e.active_count for e in self.queue.values()),
            "waiting": sum(len(w) for w in self.waiters.values()),
            "callbacks": sum(len(c) for c in self.callbacks.values()),
            "locks": len(self.locks),
            "pending_updates": len(self.pending_updates),
            "max_concurrent_per_domain": self.config.max_concurrent_per_domain,
            "running": bool(self._tasks),
            "details": domains,
        }


def build_profile_queue(config: CoordinatorConfig, profiler) -> AdmissionQueue[ProfileUpdate]:
    """Admission queue whose buffered updates are applied to ``profiler``."""
    return AdmissionQueue(
        config,
        queue_file=config.queue_file,
        updates_file=config.updates_file,
        update_model=ProfileUpdate,
        applier=profiler.apply_queued_update,
        name="profile-queue",
    )
