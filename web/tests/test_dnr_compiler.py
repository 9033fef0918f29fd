from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass

import pytest

from services.dnr_compiler import (
    STATE_COMPILED,
    STATE_COMPILING,
    STATE_FAILED,
    STATE_UNINITIALIZED,
    RuleListCompiler,
)
from services.dnr_rule_store import RuleStore
from services.dnr_rules import parse_rule
from services.errors import CompilationFailed


@dataclass(frozen=True)
class FakeArtifact:
    identifier: str
    encoded: str
    sha256: str


class FakeService:
    def __init__(self):
        self.compiled = []
        self.removed = []
        self.fail_with = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def compile(self, identifier, encoded):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.fail_with is not None:
                raise self.fail_with
            self.compiled.append((identifier, encoded))
            return FakeArtifact(identifier=identifier, encoded=encoded, sha256=str(hash(encoded)))
        finally:
            with self._lock:
                self.active -= 1

    def remove(self, identifier):
        self.removed.append(identifier)


class GatedService(FakeService):
    """compile() blocks until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def compile(self, identifier, encoded):
        self.entered.set()
        assert self.gate.wait(5)
        return super().compile(identifier, encoded)


def _rules(*ids, action="block"):
    return [parse_rule({"id": i, "action": {"type": action}, "condition": {"urlFilter": f"||r{i}.example^"}}) for i in ids]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def store():
    return RuleStore()


def test_empty_ruleset_is_a_noop(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    summary = compiler.compile("ext")
    assert summary.skipped
    assert service.compiled == []
    assert compiler.get_artifact("ext") is None
    assert compiler.get_state("ext") == STATE_UNINITIALIZED


def test_compile_caches_artifact_under_stable_identifier(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    store.load_static("ext", _rules(1))
    store.update_dynamic("ext", _rules(2, action="redirect"))
    store.update_session("ext", _rules(3, action="modifyHeaders"))

    summary = compiler.compile("ext")
    assert (summary.total, summary.emitted, summary.degraded, summary.dropped) == (3, 2, 1, 1)
    assert summary.degraded_ids == (2,)
    assert summary.dropped_ids == (3,)
    assert compiler.get_state("ext") == STATE_COMPILED

    artifact = compiler.get_artifact("ext")
    assert artifact.identifier == "extension-ext-rules"
    doc = json.loads(artifact.encoded)
    assert [f["action"]["type"] for f in doc] == ["block", "block"]

    store.update_dynamic("ext", remove_ids={2})
    compiler.compile("ext")
    assert {ident for ident, _ in service.compiled} == {"extension-ext-rules"}


def test_recompiling_unchanged_rules_is_idempotent(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1, 2, 3))
    store.update_session("ext", _rules(4))
    compiler.compile("ext")
    compiler.compile("ext")
    assert len(service.compiled) == 2
    assert service.compiled[0][1] == service.compiled[1][1]


def test_failure_keeps_previous_artifact(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))
    compiler.compile("ext")
    good = compiler.get_artifact("ext")

    service.fail_with = CompilationFailed("bad regex")
    store.update_dynamic("ext", _rules(2))
    with pytest.raises(CompilationFailed):
        compiler.compile("ext")
    assert compiler.get_artifact("ext") is good
    assert compiler.get_state("ext") == STATE_FAILED
    assert "bad regex" in compiler.last_error("ext")


def test_unexpected_service_errors_become_compilation_failed(store):
    service = FakeService()
    service.fail_with = RuntimeError("store offline")
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))
    with pytest.raises(CompilationFailed) as info:
        compiler.compile("ext")
    assert info.value.client_id == "ext"


def test_mutation_during_compile_is_seen_by_next_compile(store):
    service = GatedService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))

    first = compiler.submit("ext")
    assert service.entered.wait(5)
    store.update_dynamic("ext", _rules(2))
    second = compiler.submit("ext")
    service.gate.set()

    assert first.result(5).total == 1
    assert second.result(5).total == 2
    assert len(json.loads(compiler.get_artifact("ext").encoded)) == 2


def test_queued_requests_coalesce_into_one_compile(store):
    service = GatedService()
    compiler = RuleListCompiler(store, service, max_workers=4)
    store.update_dynamic("ext", _rules(1))

    first = compiler.submit("ext")
    assert service.entered.wait(5)
    store.update_dynamic("ext", _rules(2))
    second = compiler.submit("ext")
    store.update_dynamic("ext", _rules(3))
    third = compiler.submit("ext")
    service.gate.set()

    results = [f.result(5) for f in (first, second, third)]
    assert results[-1].total == 3
    # first compile + one compile covering both queued requests
    assert len(service.compiled) == 2
    assert service.max_active == 1


def test_different_clients_compile_in_parallel(store):
    service = GatedService()
    compiler = RuleListCompiler(store, service, max_workers=2)
    store.update_dynamic("a", _rules(1))
    store.update_dynamic("b", _rules(1))

    fa = compiler.submit("a")
    fb = compiler.submit("b")
    # Neither client waits for the other one's compile.
    assert _wait_for(lambda: compiler.get_state("a") == STATE_COMPILING and compiler.get_state("b") == STATE_COMPILING)
    service.gate.set()
    fa.result(5)
    fb.result(5)
    assert compiler.get_state("a") == STATE_COMPILED
    assert compiler.get_state("b") == STATE_COMPILED


def test_removed_client_does_not_resurrect_artifact(store):
    service = GatedService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))

    fut = compiler.submit("ext")
    assert service.entered.wait(5)

    store.remove_client("ext")
    remover = threading.Thread(target=compiler.discard, args=("ext",))
    remover.start()
    assert _wait_for(lambda: compiler.get_state("ext") == STATE_UNINITIALIZED)

    service.gate.set()
    summary = fut.result(5)
    remover.join(5)

    assert summary.discarded
    assert compiler.get_artifact("ext") is None
    assert service.removed == ["extension-ext-rules"]


def test_discard_drops_cache_and_removes_from_service(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))
    compiler.compile("ext")

    assert compiler.discard("ext") is True
    assert compiler.get_artifact("ext") is None
    assert service.removed == ["extension-ext-rules"]
    assert compiler.discard("unknown") is False


def test_remove_failure_is_logged_not_raised(store, caplog):
    class BrokenRemove(FakeService):
        def remove(self, identifier):
            raise RuntimeError("gone")

    compiler = RuleListCompiler(store, BrokenRemove())
    store.update_dynamic("flaky", _rules(1))
    compiler.compile("flaky")
    compiler.discard("flaky")
    assert "Failed to remove compiled rule list" in caplog.text


class OneClientGate(FakeService):
    """compile() blocks only for the given identifier."""

    def __init__(self, identifier):
        super().__init__()
        self.identifier = identifier
        self.entered = threading.Event()
        self.gate = threading.Event()

    def compile(self, identifier, encoded):
        if identifier == self.identifier:
            self.entered.set()
            assert self.gate.wait(5)
        return super().compile(identifier, encoded)


def test_queued_compile_does_not_hold_a_worker(store):
    service = OneClientGate("extension-a-rules")
    compiler = RuleListCompiler(store, service, max_workers=2)
    store.update_dynamic("a", _rules(1))
    store.update_dynamic("b", _rules(2))

    fa1 = compiler.submit("a")
    assert service.entered.wait(5)
    fa2 = compiler.submit("a")
    assert compiler.submit("a") is fa2

    fb = compiler.submit("b")
    assert fb.result(5).emitted == 1
    assert not fa1.done()

    service.gate.set()
    fa1.result(5)
    fa2.result(5)


def test_removed_and_empty_clients_leave_no_slot(store):
    service = FakeService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))
    compiler.compile("ext")
    compiler.compile("nobody")

    store.remove_client("ext")
    compiler.discard("ext")
    assert _wait_for(lambda: compiler._slots == {})


def test_slot_dropped_after_discard_during_compile(store):
    service = GatedService()
    compiler = RuleListCompiler(store, service)
    store.update_dynamic("ext", _rules(1))

    fut = compiler.submit("ext")
    assert service.entered.wait(5)
    store.remove_client("ext")
    remover = threading.Thread(target=compiler.discard, args=("ext",))
    remover.start()
    assert _wait_for(lambda: compiler.get_state("ext") == STATE_UNINITIALIZED)
    service.gate.set()
    fut.result(5)
    remover.join(5)

    assert _wait_for(lambda: compiler._slots == {})
