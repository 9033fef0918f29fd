from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from services.dnr_translate import TARGET_RESOURCE_TYPES
from services.errors import CompilationFailed, RulesetNotFound


logger = logging.getLogger(__name__)


# Content-blocker rule list store: the compilation service behind the
# compiler. Anything offering
#
#     compile(identifier, document) -> artifact   (raises on rejection)
#     remove(identifier) -> None
#
# can stand in for it. This one validates the target document and keeps
# the compiled list in SQLite keyed by identifier, so recompiling the same
# identifier replaces the previous list.


MAX_RULES_PER_LIST = 150000

TRIGGER_RESOURCE_TYPES = frozenset(TARGET_RESOURCE_TYPES)

TRIGGER_LOAD_TYPES = frozenset({"first-party", "third-party"})

ACTION_TYPES = frozenset({"block", "block-cookies", "css-display-none", "ignore-previous-rules", "make-https"})

_DOMAIN_KEYS = ("if-domain", "unless-domain", "if-top-url", "unless-top-url")


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class ContentRuleList:
    identifier: str
    sha256: str
    rule_count: int
    compiled_ts: int
    encoded: str


def _fail(index: int, message: str) -> CompilationFailed:
    return CompilationFailed(f"Rule list entry {index}: {message}")


def _validate_trigger(index: int, trigger: Any) -> None:
    if not isinstance(trigger, dict):
        raise _fail(index, "trigger must be an object")

    url_filter = trigger.get("url-filter")
    if not isinstance(url_filter, str) or not url_filter:
        raise _fail(index, "trigger.url-filter is required")
    if not url_filter.isascii():
        raise _fail(index, "trigger.url-filter must be ASCII")
    try:
        re.compile(url_filter)
    except re.error as e:
        raise _fail(index, f"invalid url-filter regex: {e}") from e

    case_sensitive = trigger.get("url-filter-is-case-sensitive")
    if case_sensitive is not None and not isinstance(case_sensitive, bool):
        raise _fail(index, "url-filter-is-case-sensitive must be a boolean")

    resource_types = trigger.get("resource-type")
    if resource_types is not None:
        if not isinstance(resource_types, list) or not resource_types:
            raise _fail(index, "resource-type must be a non-empty list")
        for t in resource_types:
            if t not in TRIGGER_RESOURCE_TYPES:
                raise _fail(index, f"unknown resource-type {t!r}")

    load_types = trigger.get("load-type")
    if load_types is not None:
        if not isinstance(load_types, list) or not load_types:
            raise _fail(index, "load-type must be a non-empty list")
        for t in load_types:
            if t not in TRIGGER_LOAD_TYPES:
                raise _fail(index, f"unknown load-type {t!r}")

    for key in _DOMAIN_KEYS:
        values = trigger.get(key)
        if values is None:
            continue
        if not isinstance(values, list) or not values or not all(isinstance(v, str) and v for v in values):
            raise _fail(index, f"{key} must be a non-empty list of strings")


def _validate_action(index: int, action: Any) -> None:
    if not isinstance(action, dict):
        raise _fail(index, "action must be an object")
    action_type = action.get("type")
    if action_type not in ACTION_TYPES:
        raise _fail(index, f"unknown action type {action_type!r}")
    if action_type == "css-display-none" and not isinstance(action.get("selector"), str):
        raise _fail(index, "css-display-none requires a selector")


def validate_content_rule_list(encoded: str) -> int:
    """Validate an encoded rule list; return its rule count or raise CompilationFailed."""
    try:
        doc = json.loads(encoded)
    except (TypeError, ValueError) as e:
        raise CompilationFailed(f"Rule list is not valid JSON: {e}") from e

    if not isinstance(doc, list):
        raise CompilationFailed("Rule list must be a JSON array.")
    if len(doc) > MAX_RULES_PER_LIST:
        raise CompilationFailed(f"Rule list has too many rules ({len(doc)} > {MAX_RULES_PER_LIST}).")

    for i, entry in enumerate(doc):
        if not isinstance(entry, dict):
            raise _fail(i, "must be an object")
        _validate_trigger(i, entry.get("trigger"))
        _validate_action(i, entry.get("action"))
    return len(doc)


class ContentRuleListStore:
    def __init__(self, db_path: str = "/var/lib/dnr-compiler/content_rule_lists.db"):
        self.db_path = db_path
        self._init_lock = threading.Lock()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def init_db(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS content_rule_lists (
                        identifier TEXT PRIMARY KEY,
                        sha256 TEXT NOT NULL,
                        rule_count INTEGER NOT NULL,
                        compiled_ts INTEGER NOT NULL,
                        encoded TEXT NOT NULL
                    );
                    """
                )
            self._initialized = True

    def compile(self, identifier: str, encoded: str) -> ContentRuleList:
        if not (identifier or "").strip():
            raise CompilationFailed("Rule list identifier is required.")
        rule_count = validate_content_rule_list(encoded)

        self.init_db()
        sha = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
        compiled_ts = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO content_rule_lists(identifier, sha256, rule_count, compiled_ts, encoded)
                VALUES(?,?,?,?,?)
                ON CONFLICT(identifier) DO UPDATE SET
                    sha256=excluded.sha256,
                    rule_count=excluded.rule_count,
                    compiled_ts=excluded.compiled_ts,
                    encoded=excluded.encoded
                """,
                (identifier, sha, rule_count, compiled_ts, encoded),
            )
        logger.debug("Stored content rule list %s (%d rules, sha256=%s)", identifier, rule_count, sha[:12])
        return ContentRuleList(
            identifier=identifier, sha256=sha, rule_count=rule_count, compiled_ts=compiled_ts, encoded=encoded
        )

    def lookup(self, identifier: str) -> Optional[ContentRuleList]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT identifier, sha256, rule_count, compiled_ts, encoded FROM content_rule_lists WHERE identifier=?",
                (identifier,),
            ).fetchone()
        if row is None:
            return None
        return ContentRuleList(
            identifier=str(row["identifier"]),
            sha256=str(row["sha256"]),
            rule_count=int(row["rule_count"]),
            compiled_ts=int(row["compiled_ts"]),
            encoded=str(row["encoded"]),
        )

    def remove(self, identifier: str) -> None:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM content_rule_lists WHERE identifier=?", (identifier,))
            deleted = cur.rowcount
        if not deleted:
            raise RulesetNotFound(f"No compiled rule list named {identifier}.")

    def identifiers(self) -> List[str]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT identifier FROM content_rule_lists ORDER BY identifier ASC").fetchall()
        return [str(r[0]) for r in rows]

    def stats(self) -> Dict[str, int]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*), COALESCE(SUM(rule_count), 0) FROM content_rule_lists").fetchone()
        return {"lists": int(row[0] or 0), "rules": int(row[1] or 0)}


_store: Optional[ContentRuleListStore] = None


def get_content_rule_list_store() -> ContentRuleListStore:
    global _store
    if _store is None:
        _store = ContentRuleListStore(
            db_path=os.environ.get("CONTENT_RULE_LIST_DB", "/var/lib/dnr-compiler/content_rule_lists.db"),
        )
    return _store
