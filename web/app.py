from flask import Flask, request, jsonify
from services.content_rule_store import get_content_rule_list_store
from services.dnr_manager import get_dnr_manager
from services.dnr_messages import error_response, handle_message
from services.errors import DnrError, InvalidRequest, error_kind

import logging
import os

app = Flask(__name__)
logger = logging.getLogger(__name__)

# Global request body limit (bytes). Static rulesets can be large.
try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(16 * 1024 * 1024)).strip()),
    )
except ValueError:
    app.config.setdefault('MAX_CONTENT_LENGTH', 16 * 1024 * 1024)


_STATUS_BY_KIND = {
    'invalidRequest': 400,
    'invalidRule': 400,
    'rulesetNotFound': 404,
    'quotaExceeded': 409,
    'compilationFailed': 502,
}


def _error(e: Exception):
    if not isinstance(e, DnrError):
        logger.exception("DNR API request failed")
    return jsonify(error_response(e)), _STATUS_BY_KIND.get(error_kind(e), 500)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequest('Request body must be a JSON object.')
    return payload


@app.after_request
def _security_headers(resp):
    resp.headers.setdefault('X-Content-Type-Options', 'nosniff')
    resp.headers.setdefault('X-Frame-Options', 'SAMEORIGIN')
    resp.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
    resp.headers.setdefault('Cache-Control', 'no-store')
    return resp


@app.route('/health', methods=['GET'])
def health():
    try:
        lists = get_content_rule_list_store().stats()
    except Exception:
        logger.exception("Content rule list store unavailable")
        return jsonify({"ok": False}), 503
    return jsonify({"ok": True, "clients": len(get_dnr_manager().rule_store.clients()), "ruleLists": lists}), 200


@app.route('/api/dnr/<client_id>/messages', methods=['POST'])
def dnr_message(client_id: str):
    payload = request.get_json(silent=True)
    resp = handle_message(get_dnr_manager(), client_id, payload)
    if resp.get('ok'):
        return jsonify(resp), 200
    return jsonify(resp), _STATUS_BY_KIND.get(resp.get('error') or '', 500)


@app.route('/api/dnr/<client_id>/static-rules', methods=['PUT'])
def dnr_static_rules(client_id: str):
    manager = get_dnr_manager()
    try:
        payload = _json_body()
        unknown = sorted(k for k in payload if k not in ('rules', 'rulesets'))
        if unknown:
            raise InvalidRequest(f'Unknown field {unknown[0]!r}.')
        rules = payload.get('rules')
        rulesets = payload.get('rulesets')
        if (rules is None) == (rulesets is None):
            raise InvalidRequest('Provide exactly one of "rules" or "rulesets".')
        if rules is not None:
            if not isinstance(rules, list):
                raise InvalidRequest('"rules" must be a list of rule objects.')
            result = manager.load_static_rules(client_id, rules)
        else:
            if not isinstance(rulesets, list):
                raise InvalidRequest('"rulesets" must be a list of ruleset objects.')
            result = manager.load_static_rulesets(client_id, rulesets)
    except Exception as e:
        return _error(e)
    return jsonify({"ok": True, "result": result.to_dict()}), 200


@app.route('/api/dnr/<client_id>/dynamic-rules', methods=['GET'])
def dnr_dynamic_rules(client_id: str):
    rules = get_dnr_manager().get_dynamic_rules(client_id)
    return jsonify({"ok": True, "result": [r.to_dict() for r in rules]}), 200


@app.route('/api/dnr/<client_id>/session-rules', methods=['GET'])
def dnr_session_rules(client_id: str):
    rules = get_dnr_manager().get_session_rules(client_id)
    return jsonify({"ok": True, "result": [r.to_dict() for r in rules]}), 200


@app.route('/api/dnr/<client_id>/rule-list', methods=['GET'])
def dnr_rule_list(client_id: str):
    manager = get_dnr_manager()
    artifact = manager.get_rule_list(client_id)
    if artifact is None:
        return jsonify({"ok": False, "error": "rulesetNotFound", "message": "No compiled rule list.", "state": manager.get_state(client_id)}), 404
    return jsonify(
        {
            "ok": True,
            "result": {
                "identifier": artifact.identifier,
                "sha256": artifact.sha256,
                "ruleCount": artifact.rule_count,
                "compiledTs": artifact.compiled_ts,
                "state": manager.get_state(client_id),
                "encoded": artifact.encoded,
            },
        }
    ), 200


@app.route('/api/dnr/<client_id>/compile', methods=['POST'])
def dnr_compile(client_id: str):
    try:
        summary = get_dnr_manager().recompile(client_id)
    except Exception as e:
        return _error(e)
    return jsonify({"ok": True, "result": summary.to_dict()}), 200


@app.route('/api/dnr/<client_id>', methods=['DELETE'])
def dnr_remove_client(client_id: str):
    try:
        get_dnr_manager().remove_rules(client_id)
    except Exception as e:
        return _error(e)
    return jsonify({"ok": True}), 200
