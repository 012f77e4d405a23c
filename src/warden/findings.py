"""Finding records shared by the consistency, merge-queue and database checks."""

from __future__ import annotations

from typing import Literal, TypedDict

Status = Literal["pass", "warn", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warn": 1, "fail": 2}


class _FindingRequired(TypedDict):
    name: str
    category: str
    status: Status
    message: str


class Finding(_FindingRequired, total=False):
    details: list[str]
    fixable: bool


def finding(
    name: str,
    category: str,
    status: Status,
    message: str,
    *,
    details: list[str] | None = None,
    fixable: bool = False,
) -> Finding:
    result: Finding = {"name": name, "category": category, "status": status, "message": message}
    if details:
        result["details"] = details
    if fixable:
        result["fixable"] = True
    return result


def worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def summarize(findings: list[Finding]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warn": 0, "fail": 0}
    for item in findings:
        counts[item["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warn']} warnings, {counts['fail']} failed."
