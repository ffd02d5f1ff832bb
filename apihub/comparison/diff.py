from __future__ import annotations

from collections import defaultdict
from typing import Any

SEVERITIES = ("breaking", "semi-breaking", "deprecated", "non-breaking", "annotation", "unclassified")


def _empty_summary() -> dict[str, int]:
    return {severity: 0 for severity in SEVERITIES}


def diff_operations(current: list[dict[str, Any]], previous: list[dict[str, Any]]) -> list[dict[str, Any]]:
    current_by_id = {op["operationId"]: op for op in current}
    previous_by_id = {op["operationId"]: op for op in previous}
    changes: list[dict[str, Any]] = []

    for operation_id in sorted(current_by_id.keys() | previous_by_id.keys()):
        now = current_by_id.get(operation_id)
        before = previous_by_id.get(operation_id)
        if before is None and now is not None:
            changes.append(_change(now, "add", "non-breaking"))
        elif now is None and before is not None:
            changes.append(_change(before, "remove", "breaking"))
        elif now is not None and before is not None and now.get("dataHash") != before.get("dataHash"):
            if now.get("deprecated") and not before.get("deprecated"):
                severity = "deprecated"
            else:
                severity = "unclassified"
            changes.append(_change(now, "change", severity))
    return changes


def _change(operation: dict[str, Any], action: str, severity: str) -> dict[str, Any]:
    return {
        "operationId": operation["operationId"],
        "apiType": operation.get("apiType", "rest"),
        "title": operation.get("title", ""),
        "action": action,
        "severity": severity,
    }


def summarize_changes(changes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    summaries: dict[str, dict[str, int]] = defaultdict(_empty_summary)
    impacted: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))
    for change in changes:
        api_type = change.get("apiType", "rest")
        severity = change.get("severity", "unclassified")
        if severity not in SEVERITIES:
            severity = "unclassified"
        summaries[api_type][severity] += 1
        impacted[api_type][severity].add(change["operationId"])
    return [
        {
            "apiType": api_type,
            "changesSummary": summaries[api_type],
            "numberOfImpactedOperations": {
                severity: len(impacted[api_type].get(severity, set())) for severity in SEVERITIES
            },
        }
        for api_type in sorted(summaries)
    ]
