import json

import pytest

from services.content_rule_store import ContentRuleListStore
from services.dnr_compiler import STATE_COMPILED, STATE_FAILED
from services.dnr_manager import DeclarativeNetRequestManager
from services.errors import CompilationFailed, InvalidRequest, QuotaExceeded, RulesetNotFound


def _block(rule_id, url_filter):
    return {"id": rule_id, "action": {"type": "block"}, "condition": {"urlFilter": url_filter}}


@pytest.fixture
def lists(tmp_path):
    return ContentRuleListStore(db_path=str(tmp_path / "content_rule_lists.db"))


@pytest.fixture
def manager(lists):
    m = DeclarativeNetRequestManager(service=lists)
    yield m
    m.compiler.shutdown()


def test_static_block_rule_compiles_to_stored_list(manager, lists):
    result = manager.load_static_rules("ext", [_block(1, "||ads.example^")])
    assert result.added == 1
    assert result.compile.emitted == 1

    artifact = manager.get_rule_list("ext")
    assert artifact.identifier == "extension-ext-rules"
    assert artifact.rule_count == 1
    assert json.loads(artifact.encoded) == [
        {"action": {"type": "block"}, "trigger": {"url-filter": ".*ads\\.example[/:?]"}}
    ]
    assert lists.lookup("extension-ext-rules").sha256 == artifact.sha256
    assert manager.get_state("ext") == STATE_COMPILED


def test_every_update_recompiles_all_tiers(manager):
    manager.load_static_rules("ext", [_block(1, "||a.example^")])
    manager.update_dynamic_rules("ext", [_block(2, "||b.example^")])
    manager.update_session_rules("ext", [_block(3, "||c.example^")])

    doc = json.loads(manager.get_rule_list("ext").encoded)
    assert len(doc) == 3

    result = manager.update_dynamic_rules("ext", remove_rule_ids=[2])
    assert result.removed == 1
    assert len(json.loads(manager.get_rule_list("ext").encoded)) == 2
    assert [r.id for r in manager.get_session_rules("ext")] == [3]


def test_quota_exceeded_rejects_whole_update(manager):
    rules = [_block(i, f"||r{i}.example^") for i in range(1, 5002)]
    with pytest.raises(QuotaExceeded):
        manager.update_dynamic_rules("ext", rules)
    assert manager.get_dynamic_rules("ext") == []
    assert manager.get_rule_list("ext") is None


def test_invalid_rules_are_skipped_and_reported(manager):
    result = manager.update_dynamic_rules("ext", [_block(1, "||ok.example^"), {"id": "x"}, "junk"])
    assert result.added == 1
    assert result.skipped_invalid == 2
    assert all(e.client_id == "ext" for e in result.invalid)
    payload = result.to_dict()
    assert payload["skippedInvalid"] == 2
    assert payload["compile"]["identifier"] == "extension-ext-rules"


def test_rejected_document_keeps_previous_list(manager):
    manager.update_dynamic_rules("ext", [_block(1, "||ok.example^")])
    good = manager.get_rule_list("ext")

    bad = {"id": 2, "action": {"type": "block"}, "condition": {"regexFilter": "(unclosed"}}
    with pytest.raises(CompilationFailed) as info:
        manager.update_dynamic_rules("ext", [bad])
    assert info.value.client_id == "ext"
    assert manager.get_rule_list("ext").sha256 == good.sha256
    assert manager.get_state("ext") == STATE_FAILED


def test_static_rulesets_toggle_and_recompile(manager):
    manager.load_static_rulesets(
        "ext",
        [
            {"id": "ads", "enabled": True, "rules": [_block(1, "||ads.example^")]},
            {"id": "trackers", "enabled": False, "rules": [_block(2, "||t.example^")]},
        ],
    )
    assert manager.get_enabled_rulesets("ext") == ["ads"]
    assert manager.get_rule_list("ext").rule_count == 1

    summary = manager.update_enabled_rulesets("ext", enable_ruleset_ids=["trackers"])
    assert summary.emitted == 2
    assert manager.get_enabled_rulesets("ext") == ["ads", "trackers"]

    with pytest.raises(InvalidRequest):
        manager.load_static_rulesets("ext", [{"enabled": True, "rules": []}])


def test_recompile_and_remove(manager, lists):
    with pytest.raises(RulesetNotFound):
        manager.recompile("ext")

    manager.update_session_rules("ext", [_block(1, "||s.example^")])
    assert manager.recompile("ext").emitted == 1

    manager.remove_rules("ext")
    assert manager.get_rule_list("ext") is None
    assert manager.get_session_rules("ext") == []
    assert lists.lookup("extension-ext-rules") is None

    with pytest.raises(RulesetNotFound):
        manager.remove_rules("never-seen")


def test_unrepresentable_rules_only_show_up_in_summary(manager):
    result = manager.update_dynamic_rules(
        "ext",
        [
            {"id": 1, "action": {"type": "redirect", "redirect": {"url": "https://x.example/"}}, "condition": {"urlFilter": "||r.example^"}},
            {"id": 2, "action": {"type": "modifyHeaders"}, "condition": {"urlFilter": "||h.example^"}},
        ],
    )
    assert result.compile.degraded_ids == (1,)
    assert result.compile.dropped_ids == (2,)
    doc = json.loads(manager.get_rule_list("ext").encoded)
    assert [f["action"]["type"] for f in doc] == ["block"]
