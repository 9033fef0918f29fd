from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from services.content_rule_store import get_content_rule_list_store
from services.dnr_compiler import CompileSummary, RuleListCompiler
from services.dnr_rule_store import (
    MAX_NUMBER_OF_DYNAMIC_RULES,
    MAX_NUMBER_OF_SESSION_RULES,
    RuleStore,
    StaticRuleset,
)
from services.dnr_rules import Rule, parse_rules
from services.errors import InvalidRequest, InvalidRule, RulesetNotFound


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateResult:
    added: int
    removed: int
    invalid: Tuple[InvalidRule, ...]
    compile: CompileSummary

    @property
    def skipped_invalid(self) -> int:
        return len(self.invalid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": self.added,
            "removed": self.removed,
            "skippedInvalid": self.skipped_invalid,
            "invalid": [str(e) for e in self.invalid],
            "compile": self.compile.to_dict(),
        }


class DeclarativeNetRequestManager:
    """Client-facing rule API: parse, mutate the tiers, then recompile before returning."""

    def __init__(self, rule_store: Optional[RuleStore] = None, compiler: Optional[RuleListCompiler] = None, service=None):
        self.rule_store = rule_store or RuleStore()
        if compiler is None:
            compiler = RuleListCompiler(self.rule_store, service or get_content_rule_list_store())
        self.compiler = compiler

    def _parse(self, client_id: str, items: Iterable[Any]) -> Tuple[List[Rule], List[InvalidRule]]:
        rules, invalid = parse_rules(items)
        for e in invalid:
            e.client_id = client_id
            logger.warning("Skipping invalid rule for %s: %s", client_id, e)
        return rules, invalid

    def load_static_rules(self, client_id: str, rules: Sequence[Any]) -> UpdateResult:
        parsed, invalid = self._parse(client_id, rules)
        self.rule_store.load_static(client_id, parsed)
        summary = self.compiler.compile(client_id)
        return UpdateResult(added=len(parsed), removed=0, invalid=tuple(invalid), compile=summary)

    def load_static_rulesets(self, client_id: str, rulesets: Sequence[Dict[str, Any]]) -> UpdateResult:
        """Load manifest-style rulesets: [{"id": str, "enabled": bool, "rules": [...]}, ...]."""
        loaded: List[StaticRuleset] = []
        invalid: List[InvalidRule] = []
        for rs in rulesets:
            if not isinstance(rs, dict) or not isinstance(rs.get("id"), str) or not rs["id"]:
                raise InvalidRequest("Each static ruleset needs a string id.", client_id=client_id)
            parsed, bad = self._parse(client_id, rs.get("rules") or [])
            invalid.extend(bad)
            loaded.append(StaticRuleset(id=rs["id"], enabled=rs.get("enabled") is True, rules=tuple(parsed)))
        added = self.rule_store.load_static_rulesets(client_id, loaded)
        summary = self.compiler.compile(client_id)
        return UpdateResult(added=added, removed=0, invalid=tuple(invalid), compile=summary)

    def update_dynamic_rules(
        self, client_id: str, add_rules: Sequence[Any] = (), remove_rule_ids: Iterable[int] = ()
    ) -> UpdateResult:
        parsed, invalid = self._parse(client_id, add_rules)
        update = self.rule_store.update_dynamic(client_id, parsed, remove_rule_ids)
        summary = self.compiler.compile(client_id)
        return UpdateResult(added=update.added, removed=update.removed, invalid=tuple(invalid), compile=summary)

    def update_session_rules(
        self, client_id: str, add_rules: Sequence[Any] = (), remove_rule_ids: Iterable[int] = ()
    ) -> UpdateResult:
        parsed, invalid = self._parse(client_id, add_rules)
        update = self.rule_store.update_session(client_id, parsed, remove_rule_ids)
        summary = self.compiler.compile(client_id)
        return UpdateResult(added=update.added, removed=update.removed, invalid=tuple(invalid), compile=summary)

    def get_dynamic_rules(self, client_id: str) -> List[Rule]:
        return list(self.rule_store.get_dynamic(client_id))

    def get_session_rules(self, client_id: str) -> List[Rule]:
        return list(self.rule_store.get_session(client_id))

    def get_enabled_rulesets(self, client_id: str) -> List[str]:
        return self.rule_store.get_enabled_rulesets(client_id)

    def update_enabled_rulesets(
        self, client_id: str, enable_ruleset_ids: Iterable[str] = (), disable_ruleset_ids: Iterable[str] = ()
    ) -> CompileSummary:
        enabled = self.rule_store.update_enabled_rulesets(client_id, enable_ruleset_ids, disable_ruleset_ids)
        logger.info("Enabled static rulesets for %s: %s", client_id, ", ".join(enabled) or "(none)")
        return self.compiler.compile(client_id)

    def get_rule_list(self, client_id: str):
        return self.compiler.get_artifact(client_id)

    def get_state(self, client_id: str) -> str:
        return self.compiler.get_state(client_id)

    def recompile(self, client_id: str) -> CompileSummary:
        if not self.rule_store.has_client(client_id):
            raise RulesetNotFound(f"No rules loaded for {client_id}.", client_id=client_id)
        return self.compiler.compile(client_id)

    def remove_rules(self, client_id: str) -> None:
        had_rules = self.rule_store.remove_client(client_id)
        had_artifact = self.compiler.discard(client_id)
        if not had_rules and not had_artifact:
            raise RulesetNotFound(f"No rules loaded for {client_id}.", client_id=client_id)
        logger.info("Removed all rules for %s", client_id)


_manager: Optional[DeclarativeNetRequestManager] = None
_manager_lock = threading.Lock()


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except ValueError:
        return int(default)


def get_dnr_manager() -> DeclarativeNetRequestManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            rule_store = RuleStore(
                max_dynamic_rules=_env_int("DNR_MAX_DYNAMIC_RULES", MAX_NUMBER_OF_DYNAMIC_RULES),
                max_session_rules=_env_int("DNR_MAX_SESSION_RULES", MAX_NUMBER_OF_SESSION_RULES),
            )
            compiler = RuleListCompiler(
                rule_store,
                get_content_rule_list_store(),
                max_workers=_env_int("DNR_COMPILE_WORKERS", 4),
            )
            _manager = DeclarativeNetRequestManager(rule_store=rule_store, compiler=compiler)
        return _manager
