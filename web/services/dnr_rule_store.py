from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from services.dnr_rules import Rule
from services.errors import QuotaExceeded, RulesetNotFound


logger = logging.getLogger(__name__)


TIER_STATIC = "static"
TIER_DYNAMIC = "dynamic"
TIER_SESSION = "session"

MAX_NUMBER_OF_DYNAMIC_RULES = 5000
MAX_NUMBER_OF_SESSION_RULES = 5000
MAX_NUMBER_OF_STATIC_RULESETS = 50
MAX_NUMBER_OF_ENABLED_STATIC_RULESETS = 10

DEFAULT_STATIC_RULESET = "_default"


@dataclass(frozen=True)
class StaticRuleset:
    id: str
    enabled: bool
    rules: Tuple[Rule, ...]


@dataclass(frozen=True)
class RuleSnapshot:
    static: Tuple[Rule, ...]
    dynamic: Tuple[Rule, ...]
    session: Tuple[Rule, ...]

    def merged(self) -> List[Rule]:
        # Static -> Dynamic -> Session, insertion order within each tier.
        return list(self.static) + list(self.dynamic) + list(self.session)

    @property
    def total(self) -> int:
        return len(self.static) + len(self.dynamic) + len(self.session)


@dataclass(frozen=True)
class TierUpdate:
    tier: str
    added: int
    removed: int
    size: int


@dataclass
class _ClientRules:
    static_rulesets: Dict[str, StaticRuleset] = field(default_factory=dict)
    dynamic: List[Rule] = field(default_factory=list)
    session: List[Rule] = field(default_factory=list)


def _apply_update(current: List[Rule], add: Sequence[Rule], remove_ids: Iterable[int]) -> Tuple[List[Rule], int]:
    """Return (new tier, removed count) without touching `current`.

    Removals go first, then `add` is appended as given. Ids are not merged,
    so every added rule counts against the quota.
    """
    remove = set(remove_ids or ())
    new = [r for r in current if r.id not in remove]
    removed = len(current) - len(new)
    new.extend(add)
    return new, removed


class RuleStore:
    """Per-client static/dynamic/session rule tiers.

    All state lives in one table guarded by one lock. Critical sections are
    dict edits only; compilation and I/O happen outside.
    """

    def __init__(
        self,
        *,
        max_dynamic_rules: int = MAX_NUMBER_OF_DYNAMIC_RULES,
        max_session_rules: int = MAX_NUMBER_OF_SESSION_RULES,
        max_static_rulesets: int = MAX_NUMBER_OF_STATIC_RULESETS,
        max_enabled_static_rulesets: int = MAX_NUMBER_OF_ENABLED_STATIC_RULESETS,
    ):
        self.max_dynamic_rules = int(max_dynamic_rules)
        self.max_session_rules = int(max_session_rules)
        self.max_static_rulesets = int(max_static_rulesets)
        self.max_enabled_static_rulesets = int(max_enabled_static_rulesets)

        self._lock = threading.Lock()
        self._clients: Dict[str, _ClientRules] = {}

    def _entry(self, client_id: str) -> _ClientRules:
        # Caller holds self._lock.
        entry = self._clients.get(client_id)
        if entry is None:
            entry = _ClientRules()
            self._clients[client_id] = entry
        return entry

    # Static tier

    def load_static(self, client_id: str, rules: Sequence[Rule]) -> int:
        """Replace the static tier with a single enabled ruleset."""
        return self.load_static_rulesets(
            client_id, [StaticRuleset(id=DEFAULT_STATIC_RULESET, enabled=True, rules=tuple(rules))]
        )

    def load_static_rulesets(self, client_id: str, rulesets: Sequence[StaticRuleset]) -> int:
        table: Dict[str, StaticRuleset] = {}
        for rs in rulesets:
            table[rs.id] = rs
        if len(table) > self.max_static_rulesets:
            raise QuotaExceeded(
                f"Too many static rulesets ({len(table)} > {self.max_static_rulesets}).", client_id=client_id
            )
        enabled = sum(1 for rs in table.values() if rs.enabled)
        if enabled > self.max_enabled_static_rulesets:
            raise QuotaExceeded(
                f"Too many enabled static rulesets ({enabled} > {self.max_enabled_static_rulesets}).",
                client_id=client_id,
            )

        with self._lock:
            self._entry(client_id).static_rulesets = table
        count = sum(len(rs.rules) for rs in table.values() if rs.enabled)
        logger.info("Loaded %d static rules for %s (%d rulesets, %d enabled)", count, client_id, len(table), enabled)
        return count

    def get_static(self, client_id: str) -> Tuple[Rule, ...]:
        with self._lock:
            entry = self._clients.get(client_id)
            if entry is None:
                return ()
            return self._enabled_static(entry)

    @staticmethod
    def _enabled_static(entry: _ClientRules) -> Tuple[Rule, ...]:
        out: List[Rule] = []
        for rs in entry.static_rulesets.values():
            if rs.enabled:
                out.extend(rs.rules)
        return tuple(out)

    def get_enabled_rulesets(self, client_id: str) -> List[str]:
        with self._lock:
            entry = self._clients.get(client_id)
            if entry is None:
                return []
            return [rs.id for rs in entry.static_rulesets.values() if rs.enabled]

    def update_enabled_rulesets(
        self, client_id: str, enable_ids: Iterable[str] = (), disable_ids: Iterable[str] = ()
    ) -> List[str]:
        enable = list(enable_ids or ())
        disable = list(disable_ids or ())
        with self._lock:
            entry = self._clients.get(client_id)
            if entry is None:
                raise RulesetNotFound(f"No rulesets loaded for {client_id}.", client_id=client_id)
            unknown = [rid for rid in enable + disable if rid not in entry.static_rulesets]
            if unknown:
                raise RulesetNotFound(f"Unknown static ruleset: {unknown[0]}", client_id=client_id)

            flags = {rid: rs.enabled for rid, rs in entry.static_rulesets.items()}
            for rid in disable:
                flags[rid] = False
            for rid in enable:
                flags[rid] = True

            enabled = sum(1 for v in flags.values() if v)
            if enabled > self.max_enabled_static_rulesets:
                raise QuotaExceeded(
                    f"Too many enabled static rulesets ({enabled} > {self.max_enabled_static_rulesets}).",
                    client_id=client_id,
                )

            entry.static_rulesets = {
                rid: StaticRuleset(id=rs.id, enabled=flags[rid], rules=rs.rules)
                for rid, rs in entry.static_rulesets.items()
            }
            return [rid for rid, on in flags.items() if on]

    # Dynamic / session tiers

    def update_dynamic(self, client_id: str, add: Sequence[Rule] = (), remove_ids: Iterable[int] = ()) -> TierUpdate:
        return self._update_tier(client_id, TIER_DYNAMIC, add, remove_ids, self.max_dynamic_rules)

    def update_session(self, client_id: str, add: Sequence[Rule] = (), remove_ids: Iterable[int] = ()) -> TierUpdate:
        return self._update_tier(client_id, TIER_SESSION, add, remove_ids, self.max_session_rules)

    def _update_tier(
        self, client_id: str, tier: str, add: Sequence[Rule], remove_ids: Iterable[int], quota: int
    ) -> TierUpdate:
        with self._lock:
            existing = self._clients.get(client_id)
            current = getattr(existing, tier) if existing is not None else []
            new, removed = _apply_update(current, add, remove_ids)
            if len(new) > quota:
                raise QuotaExceeded(
                    f"{tier.capitalize()} rule quota exceeded ({len(new)} > {quota}).", client_id=client_id
                )
            setattr(self._entry(client_id), tier, new)
            size = len(new)

        logger.info("Updated %s rules for %s: +%d -%d (now %d)", tier, client_id, len(add), removed, size)
        return TierUpdate(tier=tier, added=len(add), removed=removed, size=size)

    def get_dynamic(self, client_id: str) -> Tuple[Rule, ...]:
        with self._lock:
            entry = self._clients.get(client_id)
            return tuple(entry.dynamic) if entry is not None else ()

    def get_session(self, client_id: str) -> Tuple[Rule, ...]:
        with self._lock:
            entry = self._clients.get(client_id)
            return tuple(entry.session) if entry is not None else ()

    # Whole client

    def snapshot(self, client_id: str) -> RuleSnapshot:
        with self._lock:
            entry = self._clients.get(client_id)
            if entry is None:
                return RuleSnapshot(static=(), dynamic=(), session=())
            return RuleSnapshot(
                static=self._enabled_static(entry),
                dynamic=tuple(entry.dynamic),
                session=tuple(entry.session),
            )

    def has_client(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._clients

    def clients(self) -> List[str]:
        with self._lock:
            return sorted(self._clients)

    def remove_client(self, client_id: str) -> bool:
        with self._lock:
            existed = self._clients.pop(client_id, None) is not None
        if existed:
            logger.info("Cleared all rule tiers for %s", client_id)
        return existed
