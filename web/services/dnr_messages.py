from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Tuple

from services.errors import DnrError, InvalidRequest, error_kind, public_error_message


logger = logging.getLogger(__name__)


# Method-based message protocol, as posted by a client:
#
#   {"method": "updateDynamicRules", "options": {"addRules": [...], "removeRuleIds": [...]}}
#
# Every method has a fixed option schema; unknown keys and mistyped values
# are rejected here, before anything reaches the rule store.


def _is_list_of(value: Any, kind: type) -> bool:
    if not isinstance(value, list):
        return False
    if kind is int:
        return all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    return all(isinstance(v, kind) for v in value)


# option name -> (element type, description)
_RULE_UPDATE_OPTIONS: Dict[str, Tuple[type, str]] = {
    "addRules": (dict, "a list of rule objects"),
    "removeRuleIds": (int, "a list of integer rule ids"),
}

_RULESET_UPDATE_OPTIONS: Dict[str, Tuple[type, str]] = {
    "enableRulesetIds": (str, "a list of ruleset id strings"),
    "disableRulesetIds": (str, "a list of ruleset id strings"),
}


def validate_options(method: str, options: Any, schema: Dict[str, Tuple[type, str]]) -> Dict[str, List[Any]]:
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise InvalidRequest(f"{method}: options must be an object.")

    unknown = sorted(k for k in options if k not in schema)
    if unknown:
        raise InvalidRequest(f"{method}: unknown option {unknown[0]!r}.")

    out: Dict[str, List[Any]] = {}
    for key, (kind, desc) in schema.items():
        value = options.get(key)
        if value is None:
            out[key] = []
            continue
        if not _is_list_of(value, kind):
            raise InvalidRequest(f"{method}: {key} must be {desc}.")
        out[key] = value
    return out


def _no_options(method: str, body: Dict[str, Any]) -> None:
    options = body.get("options")
    if options not in (None, {}):
        raise InvalidRequest(f"{method}: takes no options.")


def _update_dynamic(manager, client_id: str, body: Dict[str, Any]) -> Any:
    opts = validate_options("updateDynamicRules", body.get("options"), _RULE_UPDATE_OPTIONS)
    return manager.update_dynamic_rules(client_id, opts["addRules"], opts["removeRuleIds"]).to_dict()


def _update_session(manager, client_id: str, body: Dict[str, Any]) -> Any:
    opts = validate_options("updateSessionRules", body.get("options"), _RULE_UPDATE_OPTIONS)
    return manager.update_session_rules(client_id, opts["addRules"], opts["removeRuleIds"]).to_dict()


def _get_dynamic(manager, client_id: str, body: Dict[str, Any]) -> Any:
    _no_options("getDynamicRules", body)
    return [r.to_dict() for r in manager.get_dynamic_rules(client_id)]


def _get_session(manager, client_id: str, body: Dict[str, Any]) -> Any:
    _no_options("getSessionRules", body)
    return [r.to_dict() for r in manager.get_session_rules(client_id)]


def _get_enabled_rulesets(manager, client_id: str, body: Dict[str, Any]) -> Any:
    _no_options("getEnabledRulesets", body)
    return manager.get_enabled_rulesets(client_id)


def _update_enabled_rulesets(manager, client_id: str, body: Dict[str, Any]) -> Any:
    opts = validate_options("updateEnabledRulesets", body.get("options"), _RULESET_UPDATE_OPTIONS)
    summary = manager.update_enabled_rulesets(client_id, opts["enableRulesetIds"], opts["disableRulesetIds"])
    return {"enabledRulesets": manager.get_enabled_rulesets(client_id), "compile": summary.to_dict()}


METHODS: Dict[str, Callable[[Any, str, Dict[str, Any]], Any]] = {
    "updateDynamicRules": _update_dynamic,
    "getDynamicRules": _get_dynamic,
    "updateSessionRules": _update_session,
    "getSessionRules": _get_session,
    "getEnabledRulesets": _get_enabled_rulesets,
    "updateEnabledRulesets": _update_enabled_rulesets,
}

_BODY_KEYS = frozenset({"method", "options"})


def dispatch(manager, client_id: str, body: Any) -> Any:
    """Run one message; raises DnrError (InvalidRequest for bad messages)."""
    if not isinstance(body, dict):
        raise InvalidRequest("Message must be an object.")
    extra = sorted(k for k in body if k not in _BODY_KEYS)
    if extra:
        raise InvalidRequest(f"Unknown message field {extra[0]!r}.")

    method = body.get("method")
    if not isinstance(method, str) or not method:
        raise InvalidRequest("Missing method")
    handler = METHODS.get(method)
    if handler is None:
        raise InvalidRequest(f"Unknown method: {method}")
    if not (client_id or "").strip():
        raise InvalidRequest("Unable to determine client id")

    logger.debug("Handling %s for %s", method, client_id)
    return handler(manager, client_id, body)


def error_response(e: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": error_kind(e), "message": public_error_message(e)}


def handle_message(manager, client_id: str, body: Any) -> Dict[str, Any]:
    """Dispatch a message and wrap the outcome in an ok/error envelope."""
    try:
        result = dispatch(manager, client_id, body)
    except DnrError as e:
        logger.warning("DNR message for %s failed: %s", client_id, e)
        return error_response(e)
    except Exception as e:
        logger.exception("DNR message for %s failed", client_id)
        return error_response(e)
    return {"ok": True, "result": result}
