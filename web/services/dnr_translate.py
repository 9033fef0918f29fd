from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.dnr_rules import (
    ACTION_ALLOW,
    ACTION_ALLOW_ALL_REQUESTS,
    ACTION_BLOCK,
    ACTION_MODIFY_HEADERS,
    ACTION_REDIRECT,
    ACTION_UPGRADE_SCHEME,
    Rule,
    RuleCondition,
)


# declarativeNetRequest -> content-blocker rule list translation.
#
# The target dialect only knows trigger matching plus block / ignore /
# make-https actions. Anything it cannot express is either degraded
# (redirect -> block) or dropped (modifyHeaders), and reported through
# Translation so callers can surface counts.

MATCH_ALL = ".*"

# `^` in a urlFilter means "separator follows".
SEPARATOR_CLASS = "[/:?]"

_REGEX_SPECIALS = set("\\.+?()[]{}$|")

RESOURCE_TYPE_MAP: Dict[str, str] = {
    "main_frame": "document",
    "sub_frame": "document",
    "stylesheet": "style-sheet",
    "script": "script",
    "image": "image",
    "font": "font",
    "xmlhttprequest": "fetch",
    "ping": "ping",
    "media": "media",
    "websocket": "websocket",
}

# Full target resource-type vocabulary, in a stable order. Types with no
# source equivalent (raw, svg-document, popup, other) still belong to an
# excludedResourceTypes complement.
TARGET_RESOURCE_TYPES: Tuple[str, ...] = (
    "document",
    "image",
    "style-sheet",
    "script",
    "font",
    "raw",
    "svg-document",
    "media",
    "popup",
    "ping",
    "fetch",
    "websocket",
    "other",
)

LOAD_TYPE_MAP: Dict[str, str] = {
    "firstParty": "first-party",
    "thirdParty": "third-party",
}

TARGET_BLOCK = "block"
TARGET_IGNORE_PREVIOUS_RULES = "ignore-previous-rules"
TARGET_MAKE_HTTPS = "make-https"

# None means "no fragment".
ACTION_MAP: Dict[str, Optional[str]] = {
    ACTION_BLOCK: TARGET_BLOCK,
    ACTION_ALLOW: TARGET_IGNORE_PREVIOUS_RULES,
    ACTION_ALLOW_ALL_REQUESTS: TARGET_IGNORE_PREVIOUS_RULES,
    ACTION_UPGRADE_SCHEME: TARGET_MAKE_HTTPS,
    ACTION_REDIRECT: TARGET_BLOCK,
    ACTION_MODIFY_HEADERS: None,
}

# Translated, but with weaker semantics than requested.
DEGRADED_ACTIONS = frozenset({ACTION_REDIRECT})


@dataclass(frozen=True)
class Translation:
    fragments: List[Dict[str, Any]]
    total: int
    degraded_ids: Tuple[int, ...]
    dropped_ids: Tuple[int, ...]

    @property
    def emitted(self) -> int:
        return len(self.fragments)

    @property
    def degraded(self) -> int:
        return len(self.degraded_ids)

    @property
    def dropped(self) -> int:
        return len(self.dropped_ids)


def convert_url_filter(url_filter: str) -> str:
    """Convert a urlFilter pattern to the target regex subset.

    `||` (domain boundary) becomes a leading `.*`, a lone leading/trailing `|`
    becomes `^`/`$`, `*` becomes `.*`, `^` becomes `[/:?]`, and every other
    regex metacharacter is escaped.
    """
    s = url_filter or ""
    prefix = ""
    suffix = ""
    if s.startswith("||"):
        prefix = MATCH_ALL
        s = s[2:]
    elif s.startswith("|"):
        prefix = "^"
        s = s[1:]
    if s.endswith("|"):
        suffix = "$"
        s = s[:-1]

    out: List[str] = [prefix]
    for ch in s:
        if ch == "*":
            out.append(MATCH_ALL)
        elif ch == "^":
            out.append(SEPARATOR_CLASS)
        elif ch in _REGEX_SPECIALS:
            out.append("\\" + ch)
        else:
            out.append(ch)
    out.append(suffix)
    return "".join(out)


def convert_resource_type(resource_type: str) -> Optional[str]:
    return RESOURCE_TYPE_MAP.get((resource_type or "").lower())


def _map_resource_types(types: Iterable[str]) -> List[str]:
    mapped = [convert_resource_type(t) for t in types]
    return list(dict.fromkeys(t for t in mapped if t is not None))


def _resource_types(cond: RuleCondition) -> Optional[List[str]]:
    """Target resource-type list, [] when unrepresentable, None when unrestricted.

    Unmappable entries are left out of the list. If that leaves nothing, the
    caller drops the rule: emitting it without a resource-type would widen it
    to every load.
    """
    if cond.resource_types:
        return _map_resource_types(cond.resource_types)
    if cond.excluded_resource_types:
        excluded = set(_map_resource_types(cond.excluded_resource_types))
        return [t for t in TARGET_RESOURCE_TYPES if t not in excluded]
    return None


def _domain_patterns(*candidates: Optional[Tuple[str, ...]]) -> Optional[List[str]]:
    for domains in candidates:
        if domains:
            return ["*" + d.strip().lower() for d in domains if d.strip()]
    return None


def build_trigger(cond: RuleCondition) -> Optional[Dict[str, Any]]:
    trigger: Dict[str, Any] = {}

    if cond.url_filter is not None:
        trigger["url-filter"] = convert_url_filter(cond.url_filter)
    elif cond.regex_filter is not None:
        trigger["url-filter"] = cond.regex_filter
    else:
        trigger["url-filter"] = MATCH_ALL

    if cond.is_url_filter_case_sensitive is True:
        trigger["url-filter-is-case-sensitive"] = True

    resource_types = _resource_types(cond)
    if resource_types is not None:
        if not resource_types:
            return None
        trigger["resource-type"] = resource_types

    if cond.domain_type in LOAD_TYPE_MAP:
        trigger["load-type"] = [LOAD_TYPE_MAP[cond.domain_type]]

    if_domain = _domain_patterns(cond.initiator_domains, cond.domains, cond.request_domains)
    if if_domain:
        trigger["if-domain"] = if_domain

    unless_domain = _domain_patterns(
        cond.excluded_initiator_domains, cond.excluded_domains, cond.excluded_request_domains
    )
    if unless_domain:
        trigger["unless-domain"] = unless_domain

    return trigger


def translate_rule(rule: Rule) -> Optional[Dict[str, Any]]:
    """Translate one rule into a target fragment, or None if it cannot be represented."""
    target_action = ACTION_MAP.get(rule.action.type)
    if target_action is None:
        return None

    trigger = build_trigger(rule.condition)
    if trigger is None:
        return None

    return {"trigger": trigger, "action": {"type": target_action}}


def translate_rules(rules: Iterable[Rule]) -> Translation:
    fragments: List[Dict[str, Any]] = []
    degraded: List[int] = []
    dropped: List[int] = []
    total = 0
    for rule in rules:
        total += 1
        fragment = translate_rule(rule)
        if fragment is None:
            dropped.append(rule.id)
            continue
        if rule.action.type in DEGRADED_ACTIONS:
            degraded.append(rule.id)
        fragments.append(fragment)
    return Translation(fragments=fragments, total=total, degraded_ids=tuple(degraded), dropped_ids=tuple(dropped))


def serialize_fragments(fragments: List[Dict[str, Any]]) -> str:
    return json.dumps(fragments, indent=2, sort_keys=True, ensure_ascii=True)
