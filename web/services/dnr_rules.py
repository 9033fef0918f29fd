from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.errors import InvalidRule


# declarativeNetRequest rule model (the source dialect).
#
# Decoding is strict at the top level (id / action / condition) and
# permissive below it: an optional field with the wrong type is treated as
# absent, never coerced.


ACTION_BLOCK = "block"
ACTION_ALLOW = "allow"
ACTION_ALLOW_ALL_REQUESTS = "allowAllRequests"
ACTION_UPGRADE_SCHEME = "upgradeScheme"
ACTION_REDIRECT = "redirect"
ACTION_MODIFY_HEADERS = "modifyHeaders"

ACTION_TYPES: Tuple[str, ...] = (
    ACTION_BLOCK,
    ACTION_ALLOW,
    ACTION_ALLOW_ALL_REQUESTS,
    ACTION_UPGRADE_SCHEME,
    ACTION_REDIRECT,
    ACTION_MODIFY_HEADERS,
)

DOMAIN_TYPES: Tuple[str, ...] = ("firstParty", "thirdParty")


@dataclass(frozen=True)
class RedirectAction:
    url: Optional[str] = None
    extension_path: Optional[str] = None
    transform: Optional[Dict[str, Any]] = None
    regex_substitution: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "url": self.url,
                "extensionPath": self.extension_path,
                "transform": self.transform,
                "regexSubstitution": self.regex_substitution,
            }
        )


@dataclass(frozen=True)
class ModifyHeaderInfo:
    header: str
    operation: str
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({"header": self.header, "operation": self.operation, "value": self.value})


@dataclass(frozen=True)
class RuleAction:
    type: str
    redirect: Optional[RedirectAction] = None
    request_headers: Optional[Tuple[ModifyHeaderInfo, ...]] = None
    response_headers: Optional[Tuple[ModifyHeaderInfo, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "type": self.type,
                "redirect": self.redirect.to_dict() if self.redirect is not None else None,
                "requestHeaders": [h.to_dict() for h in self.request_headers] if self.request_headers is not None else None,
                "responseHeaders": [h.to_dict() for h in self.response_headers] if self.response_headers is not None else None,
            }
        )


@dataclass(frozen=True)
class RuleCondition:
    url_filter: Optional[str] = None
    regex_filter: Optional[str] = None
    is_url_filter_case_sensitive: Optional[bool] = None
    initiator_domains: Optional[Tuple[str, ...]] = None
    excluded_initiator_domains: Optional[Tuple[str, ...]] = None
    request_domains: Optional[Tuple[str, ...]] = None
    excluded_request_domains: Optional[Tuple[str, ...]] = None
    domains: Optional[Tuple[str, ...]] = None
    excluded_domains: Optional[Tuple[str, ...]] = None
    resource_types: Optional[Tuple[str, ...]] = None
    excluded_resource_types: Optional[Tuple[str, ...]] = None
    request_methods: Optional[Tuple[str, ...]] = None
    excluded_request_methods: Optional[Tuple[str, ...]] = None
    domain_type: Optional[str] = None
    tab_ids: Optional[Tuple[int, ...]] = None
    excluded_tab_ids: Optional[Tuple[int, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for attr, key in _CONDITION_FIELDS:
            v = getattr(self, attr)
            if v is None:
                continue
            out[key] = list(v) if isinstance(v, tuple) else v
        return out


@dataclass(frozen=True)
class Rule:
    id: int
    action: RuleAction
    condition: RuleCondition
    priority: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "priority": self.priority,
                "action": self.action.to_dict(),
                "condition": self.condition.to_dict(),
            }
        )


# (attribute, JSON key) for list-valued condition fields.
_STR_LIST_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("initiator_domains", "initiatorDomains"),
    ("excluded_initiator_domains", "excludedInitiatorDomains"),
    ("request_domains", "requestDomains"),
    ("excluded_request_domains", "excludedRequestDomains"),
    ("domains", "domains"),
    ("excluded_domains", "excludedDomains"),
    ("resource_types", "resourceTypes"),
    ("excluded_resource_types", "excludedResourceTypes"),
    ("request_methods", "requestMethods"),
    ("excluded_request_methods", "excludedRequestMethods"),
)

_INT_LIST_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("tab_ids", "tabIds"),
    ("excluded_tab_ids", "excludedTabIds"),
)

_CONDITION_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("url_filter", "urlFilter"),
    ("regex_filter", "regexFilter"),
    ("is_url_filter_case_sensitive", "isUrlFilterCaseSensitive"),
) + _STR_LIST_FIELDS + (("domain_type", "domainType"),) + _INT_LIST_FIELDS


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _is_int(v: Any) -> bool:
    # bool is an int subclass; JSON true/false is never a rule id.
    return isinstance(v, int) and not isinstance(v, bool)


def _opt_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    return v if isinstance(v, str) else None


def _opt_bool(obj: Dict[str, Any], key: str) -> Optional[bool]:
    v = obj.get(key)
    return v if isinstance(v, bool) else None


def _opt_int(obj: Dict[str, Any], key: str) -> Optional[int]:
    v = obj.get(key)
    return v if _is_int(v) else None


def _opt_str_list(obj: Dict[str, Any], key: str) -> Optional[Tuple[str, ...]]:
    v = obj.get(key)
    if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
        return None
    return tuple(v)


def _opt_int_list(obj: Dict[str, Any], key: str) -> Optional[Tuple[int, ...]]:
    v = obj.get(key)
    if not isinstance(v, list) or not all(_is_int(x) for x in v):
        return None
    return tuple(v)


def _parse_headers(obj: Dict[str, Any], key: str) -> Optional[Tuple[ModifyHeaderInfo, ...]]:
    v = obj.get(key)
    if not isinstance(v, list):
        return None
    out: List[ModifyHeaderInfo] = []
    for item in v:
        if not isinstance(item, dict):
            continue
        header = _opt_str(item, "header")
        operation = _opt_str(item, "operation")
        if header is None or operation is None:
            continue
        out.append(ModifyHeaderInfo(header=header, operation=operation, value=_opt_str(item, "value")))
    return tuple(out)


def _parse_redirect(obj: Dict[str, Any]) -> Optional[RedirectAction]:
    v = obj.get("redirect")
    if not isinstance(v, dict):
        return None
    transform = v.get("transform")
    return RedirectAction(
        url=_opt_str(v, "url"),
        extension_path=_opt_str(v, "extensionPath"),
        transform=dict(transform) if isinstance(transform, dict) else None,
        regex_substitution=_opt_str(v, "regexSubstitution"),
    )


def parse_action(obj: Any) -> RuleAction:
    if not isinstance(obj, dict):
        raise InvalidRule("Rule action must be an object.")
    action_type = obj.get("type")
    if not isinstance(action_type, str):
        raise InvalidRule("Rule action.type is required.")
    if action_type not in ACTION_TYPES:
        raise InvalidRule(f"Unknown rule action type: {action_type}")
    return RuleAction(
        type=action_type,
        redirect=_parse_redirect(obj),
        request_headers=_parse_headers(obj, "requestHeaders"),
        response_headers=_parse_headers(obj, "responseHeaders"),
    )


def parse_condition(obj: Any) -> RuleCondition:
    if not isinstance(obj, dict):
        raise InvalidRule("Rule condition must be an object.")

    fields: Dict[str, Any] = {
        "url_filter": _opt_str(obj, "urlFilter"),
        "regex_filter": _opt_str(obj, "regexFilter"),
        "is_url_filter_case_sensitive": _opt_bool(obj, "isUrlFilterCaseSensitive"),
    }
    for attr, key in _STR_LIST_FIELDS:
        fields[attr] = _opt_str_list(obj, key)
    for attr, key in _INT_LIST_FIELDS:
        fields[attr] = _opt_int_list(obj, key)

    domain_type = _opt_str(obj, "domainType")
    fields["domain_type"] = domain_type if domain_type in DOMAIN_TYPES else None
    return RuleCondition(**fields)


def parse_rule(obj: Any) -> Rule:
    """Decode one rule dict into a Rule; raises InvalidRule when malformed."""
    if not isinstance(obj, dict):
        raise InvalidRule("Rule must be an object.")

    rule_id = obj.get("id")
    if rule_id is None:
        raise InvalidRule("Rule id is required.")
    if not _is_int(rule_id):
        raise InvalidRule("Rule id must be an integer.")

    if "condition" not in obj:
        raise InvalidRule("Rule condition is required.", rule_id=rule_id)

    try:
        action = parse_action(obj.get("action"))
        condition = parse_condition(obj.get("condition"))
    except InvalidRule as e:
        raise InvalidRule(f"Rule {rule_id}: {e}", rule_id=rule_id) from e

    return Rule(id=rule_id, priority=_opt_int(obj, "priority"), action=action, condition=condition)


def parse_rules(items: Iterable[Any]) -> Tuple[List[Rule], List[InvalidRule]]:
    """Decode a batch; malformed entries are collected instead of aborting the batch."""
    rules: List[Rule] = []
    errors: List[InvalidRule] = []
    for i, item in enumerate(items or []):
        try:
            rules.append(parse_rule(item))
        except InvalidRule as e:
            errors.append(InvalidRule(f"rules[{i}]: {e}", index=i, rule_id=e.rule_id))
    return rules, errors
