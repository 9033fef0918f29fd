from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from services.dnr_rule_store import RuleStore
from services.dnr_translate import serialize_fragments, translate_rules
from services.errors import CompilationFailed
from services.logutil import forget, log_exception_throttled, log_warning_throttled


logger = logging.getLogger(__name__)


STATE_UNINITIALIZED = "uninitialized"
STATE_COMPILING = "compiling"
STATE_COMPILED = "compiled"
STATE_FAILED = "failed"


@dataclass(frozen=True)
class CompileSummary:
    client_id: str
    identifier: str
    total: int = 0
    emitted: int = 0
    degraded_ids: Tuple[int, ...] = ()
    dropped_ids: Tuple[int, ...] = ()
    sha256: str = ""
    skipped: bool = False
    discarded: bool = False

    @property
    def degraded(self) -> int:
        return len(self.degraded_ids)

    @property
    def dropped(self) -> int:
        return len(self.dropped_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "identifier": self.identifier,
            "total": self.total,
            "emitted": self.emitted,
            "degraded": self.degraded,
            "dropped": self.dropped,
            "degradedRuleIds": list(self.degraded_ids),
            "droppedRuleIds": list(self.dropped_ids),
            "sha256": self.sha256,
            "skipped": self.skipped,
            "discarded": self.discarded,
        }


@dataclass
class _Slot:
    # compile_lock is held for the whole of one compilation so discard() can
    # wait it out; the other fields are guarded by RuleListCompiler._lock.
    compile_lock: threading.Lock = field(default_factory=threading.Lock)
    epoch: int = 0
    running: bool = False
    pending: Optional[Future] = None
    removed: bool = False
    state: str = STATE_UNINITIALIZED
    artifact: Any = None
    last_error: Optional[str] = None


class RuleListCompiler:
    """Merge a client's tiers, translate, and hand the document to the compilation service.

    At most one compilation per client is running and at most one more is
    queued behind it; further requests share the queued one, which reads its
    snapshot only when it starts. Queued work never occupies a pool worker,
    so different clients compile in parallel.
    """

    def __init__(self, rule_store: RuleStore, service, *, max_workers: int = 4):
        self.rule_store = rule_store
        self.service = service
        self._lock = threading.Lock()
        self._slots: Dict[str, _Slot] = {}
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="dnr-compile")

    @staticmethod
    def artifact_identifier(client_id: str) -> str:
        return f"extension-{client_id}-rules"

    def submit(self, client_id: str) -> "Future[CompileSummary]":
        with self._lock:
            slot = self._slots.get(client_id)
            if slot is None:
                slot = _Slot()
                self._slots[client_id] = slot
            slot.removed = False
            if slot.pending is not None:
                return slot.pending
            fut: Future = Future()
            if slot.running:
                slot.pending = fut
                return fut
            slot.running = True
        self._start(client_id, slot, fut)
        return fut

    def compile(self, client_id: str) -> CompileSummary:
        return self.submit(client_id).result()

    def _start(self, client_id: str, slot: _Slot, fut: Future) -> None:
        try:
            self._executor.submit(self._drive, client_id, slot, fut)
        except RuntimeError as e:
            # Pool shut down.
            self._finish(client_id, slot)
            fut.set_exception(e)

    def _drive(self, client_id: str, slot: _Slot, fut: Future) -> None:
        if fut.set_running_or_notify_cancel():
            try:
                fut.set_result(self._run(client_id, slot))
            except Exception as e:
                fut.set_exception(e)
        self._finish(client_id, slot)

    def _finish(self, client_id: str, slot: _Slot) -> None:
        with self._lock:
            if slot.pending is not None:
                nxt = slot.pending
                slot.pending = None
            else:
                nxt = None
                slot.running = False
                self._maybe_drop(client_id, slot)
        if nxt is not None:
            self._start(client_id, slot, nxt)

    def _maybe_drop(self, client_id: str, slot: _Slot) -> None:
        # Caller holds self._lock. Removed clients and clients that never
        # produced anything keep no slot.
        if slot.running or slot.pending is not None or self._slots.get(client_id) is not slot:
            return
        if slot.removed or (slot.artifact is None and slot.state == STATE_UNINITIALIZED):
            del self._slots[client_id]

    def _run(self, client_id: str, slot: _Slot) -> CompileSummary:
        identifier = self.artifact_identifier(client_id)
        with slot.compile_lock:
            with self._lock:
                epoch = slot.epoch
                previous_state = slot.state
                slot.state = STATE_COMPILING

            snapshot = self.rule_store.snapshot(client_id)
            rules = snapshot.merged()
            if not rules:
                logger.info("No rules to compile for %s", client_id)
                with self._lock:
                    if slot.epoch == epoch:
                        slot.state = previous_state
                return CompileSummary(client_id=client_id, identifier=identifier, skipped=True)

            logger.info(
                "Compiling %d rules for %s (static: %d, dynamic: %d, session: %d)",
                len(rules),
                client_id,
                len(snapshot.static),
                len(snapshot.dynamic),
                len(snapshot.session),
            )
            translation = translate_rules(rules)
            if translation.degraded or translation.dropped:
                log_warning_throttled(
                    logger,
                    f"dnr.{client_id}.degraded",
                    client_id,
                    translation.degraded,
                    translation.dropped,
                    interval_seconds=300.0,
                    message="Rules for %s not fully representable: %d redirect rules degraded to block, %d rules dropped",
                )
            document = serialize_fragments(translation.fragments)

            try:
                artifact = self.service.compile(identifier, document)
            except Exception as e:
                err = e if isinstance(e, CompilationFailed) else CompilationFailed(f"Rule compilation failed: {e}")
                err.client_id = client_id
                with self._lock:
                    if slot.epoch == epoch:
                        slot.state = STATE_FAILED
                        slot.last_error = str(err)
                logger.error("Rule compilation failed for %s: %s", client_id, err)
                if err is e:
                    raise
                raise err from e

            summary = CompileSummary(
                client_id=client_id,
                identifier=identifier,
                total=translation.total,
                emitted=translation.emitted,
                degraded_ids=translation.degraded_ids,
                dropped_ids=translation.dropped_ids,
                sha256=str(getattr(artifact, "sha256", "") or ""),
            )

            with self._lock:
                if slot.epoch != epoch:
                    # Client removed while compiling; discard() removes the
                    # identifier from the service once we release compile_lock.
                    logger.info("Discarding rule list compiled for removed client %s", client_id)
                    return CompileSummary(
                        client_id=client_id,
                        identifier=identifier,
                        total=summary.total,
                        emitted=summary.emitted,
                        degraded_ids=summary.degraded_ids,
                        dropped_ids=summary.dropped_ids,
                        sha256=summary.sha256,
                        discarded=True,
                    )
                slot.artifact = artifact
                slot.state = STATE_COMPILED
                slot.last_error = None

        logger.info("Compiled %d of %d rules for %s", summary.emitted, summary.total, client_id)
        return summary

    def get_artifact(self, client_id: str):
        with self._lock:
            slot = self._slots.get(client_id)
            return slot.artifact if slot is not None else None

    def get_state(self, client_id: str) -> str:
        with self._lock:
            slot = self._slots.get(client_id)
            return slot.state if slot is not None else STATE_UNINITIALIZED

    def last_error(self, client_id: str) -> Optional[str]:
        with self._lock:
            slot = self._slots.get(client_id)
            return slot.last_error if slot is not None else None

    def discard(self, client_id: str) -> bool:
        """Forget a client's artifact and remove it from the compilation service.

        Waits for an in-flight compilation of the client to finish first, so
        the service never sees a removal racing a compile of the same
        identifier. Removal failures are logged, not raised.
        """
        with self._lock:
            slot = self._slots.get(client_id)
            if slot is None:
                return False
            had_artifact = slot.artifact is not None
            # An in-flight compile may store the identifier after we return.
            maybe_stored = had_artifact or slot.state == STATE_COMPILING
            slot.epoch += 1
            slot.removed = True
            slot.artifact = None
            slot.last_error = None
            slot.state = STATE_UNINITIALIZED

        identifier = self.artifact_identifier(client_id)
        with slot.compile_lock:
            if maybe_stored:
                try:
                    self.service.remove(identifier)
                except Exception:
                    log_exception_throttled(
                        logger,
                        f"dnr.{client_id}.remove",
                        identifier,
                        interval_seconds=300.0,
                        message="Failed to remove compiled rule list %s",
                    )
        with self._lock:
            self._maybe_drop(client_id, slot)
        forget(f"dnr.{client_id}.")
        return had_artifact

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
