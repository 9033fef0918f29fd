#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import json
import os
import sys
from typing import Any, Dict, List, Optional

# Allow running as `python tools/dnr_compile.py` from web/.
_WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _WEB_DIR not in sys.path:
    sys.path.insert(0, _WEB_DIR)

from services.content_rule_store import validate_content_rule_list  # noqa: E402
from services.dnr_rules import Rule, parse_rules  # noqa: E402
from services.dnr_translate import serialize_fragments, translate_rules  # noqa: E402
from services.errors import CompilationFailed  # noqa: E402


# Offline compile of declarativeNetRequest rule files (the JSON files a
# manifest's rule_resources point at) into a content-blocker rule list.
# Files are merged in command-line order, like enabled static rulesets.


def _load_rule_file(path: str) -> List[Any]:
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)
    if not isinstance(doc, list):
        raise ValueError(f"{path}: expected a JSON array of rules")
    return doc


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Compile declarativeNetRequest rule files into a content-blocker rule list.")
    ap.add_argument("rule_files", nargs="+", help="JSON files, each an array of rules")
    ap.add_argument("--out", required=True, help="Path to write the rule list JSON")
    ap.add_argument("--report", default="", help="Optional path for a JSON report")
    ap.add_argument("--no-validate", action="store_true", help="Skip target document validation")
    args = ap.parse_args(argv)

    rules: List[Rule] = []
    per_file: Dict[str, Dict[str, int]] = {}
    invalid_total = 0
    for path in args.rule_files:
        try:
            items = _load_rule_file(path)
        except (OSError, ValueError) as e:
            print(f"[dnr_compile] failed reading {path}: {e}", file=sys.stderr)
            return 2
        parsed, invalid = parse_rules(items)
        for err in invalid:
            print(f"[dnr_compile] {path}: skipping invalid rule: {err}", file=sys.stderr)
        invalid_total += len(invalid)
        per_file[path] = {"rules": len(parsed), "invalid": len(invalid)}
        rules.extend(parsed)

    translation = translate_rules(rules)
    encoded = serialize_fragments(translation.fragments)

    if not args.no_validate and translation.fragments:
        try:
            validate_content_rule_list(encoded)
        except CompilationFailed as e:
            print(f"[dnr_compile] rule list rejected: {e}", file=sys.stderr)
            return 1

    out_dir = os.path.dirname(args.out)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(args.out, "w", encoding="utf-8") as f:
        f.write(encoded)
        f.write("\n")

    if args.report:
        report = {
            "files": per_file,
            "counts": {
                "total": translation.total,
                "emitted": translation.emitted,
                "degraded": translation.degraded,
                "dropped": translation.dropped,
                "invalid": invalid_total,
            },
            "degraded_rule_ids": list(translation.degraded_ids),
            "dropped_rule_ids": list(translation.dropped_ids),
            "sha256": hashlib.sha256(encoded.encode("utf-8")).hexdigest(),
            "out": args.out,
        }
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, sort_keys=True)
            f.write("\n")

    print(
        f"[dnr_compile] compiled: total={translation.total} emitted={translation.emitted} degraded={translation.degraded} dropped={translation.dropped} invalid={invalid_total}",
        flush=True,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
