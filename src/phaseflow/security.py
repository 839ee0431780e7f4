from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

from phaseflow.models import SecurityFinding, Severity, utcnow_iso
from phaseflow.parsing import extract_json_objects
from phaseflow.state.artifacts import ArtifactStore
from phaseflow.state.ledger import JsonLedger

SEVERITY_LINE_PATTERN = re.compile(
    r"^\s*[-*]?\s*(?:\[(?P<bracketed>CRITICAL|HIGH|MEDIUM|LOW)\]|(?P<labelled>CRITICAL|HIGH|MEDIUM|LOW)\s*:)"
    r"\s*(?P<title>.+?)\s*(?:\((?P<location>\S+)\))?\s*$",
    re.IGNORECASE | re.MULTILINE,
)
ACCEPTED_DIR = "security/accepted"


def finding_id(severity: Severity, title: str, location: str) -> str:
    raw = f"{severity}|{title.strip().lower()}|{location.strip()}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:10]


def _make_finding(severity: str, title: str, location: str) -> SecurityFinding | None:
    try:
        level = Severity(severity.strip().lower())
    except ValueError:
        return None
    clean_title = title.strip()
    if not clean_title:
        return None
    return SecurityFinding(
        finding_id=finding_id(level, clean_title, location),
        severity=level,
        title=clean_title,
        location=location.strip(),
    )


def parse_findings(content: str) -> list[SecurityFinding]:
    """Parse audit output: JSON lines when present, otherwise ``SEVERITY: title (location)`` lines."""
    findings: dict[str, SecurityFinding] = {}
    structured = False
    for payload in extract_json_objects(content):
        items = payload.get("findings")
        candidates = items if isinstance(items, list) else [payload]
        for item in candidates:
            if not isinstance(item, dict) or not isinstance(item.get("severity"), str):
                continue
            structured = True
            finding = _make_finding(
                item["severity"], str(item.get("title", "")), str(item.get("location", ""))
            )
            if finding is not None:
                findings[finding.finding_id] = finding
    if structured:
        return sorted(findings.values(), key=_order)

    for match in SEVERITY_LINE_PATTERN.finditer(content):
        severity = match.group("bracketed") or match.group("labelled")
        finding = _make_finding(severity, match.group("title"), match.group("location") or "")
        if finding is not None:
            findings[finding.finding_id] = finding
    return sorted(findings.values(), key=_order)


def _order(finding: SecurityFinding) -> tuple[int, str]:
    rank = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW].index(finding.severity)
    return rank, finding.finding_id


@dataclass(slots=True)
class Triage:
    critical: list[SecurityFinding] = field(default_factory=list)
    high: list[SecurityFinding] = field(default_factory=list)
    backlog: list[SecurityFinding] = field(default_factory=list)

    @classmethod
    def of(cls, findings: list[SecurityFinding]) -> Triage:
        triage = cls()
        for finding in findings:
            if finding.severity == Severity.CRITICAL:
                triage.critical.append(finding)
            elif finding.severity == Severity.HIGH:
                triage.high.append(finding)
            else:
                triage.backlog.append(finding)
        return triage


def accepted_risk_path(identifier: str) -> str:
    return f"{ACCEPTED_DIR}/{identifier}.md"


def is_risk_accepted(store: ArtifactStore, identifier: str) -> bool:
    return store.exists(accepted_risk_path(identifier))


def accept_risk(
    store: ArtifactStore,
    identifier: str,
    justification: str,
    *,
    accepted_by: str,
) -> None:
    """Record an operator's accepted-risk justification for a High finding."""
    if not justification.strip():
        raise ValueError("An accepted-risk justification must not be empty.")
    body = "\n".join(
        [
            f"# Accepted risk {identifier}",
            "",
            f"- Accepted by: {accepted_by}",
            f"- Accepted at: {utcnow_iso()}",
            "",
            justification.strip(),
            "",
        ]
    )
    store.write(
        accepted_risk_path(identifier),
        body,
        immutable=True,
        phase="security",
        kind="accepted-risk",
    )


def append_backlog(ledger: JsonLedger, feature: str, findings: list[SecurityFinding]) -> int:
    """Add Medium/Low findings to the backlog once each; returns how many were new."""
    added = 0

    def _updater(payload: object) -> dict:
        nonlocal added
        added = 0
        backlog = payload if isinstance(payload, dict) else {}
        items = backlog.get("items", [])
        if not isinstance(items, list):
            items = []
        known = {(item.get("feature"), item.get("id")) for item in items if isinstance(item, dict)}
        for finding in findings:
            if (feature, finding.finding_id) in known:
                continue
            items.append({**finding.to_dict(), "feature": feature, "recorded_at": utcnow_iso()})
            added += 1
        backlog["items"] = items
        return backlog

    ledger.update_json("backlog", _updater, default={"items": []})
    return added


def backlog_items(ledger: JsonLedger) -> list[dict]:
    payload = ledger.get_json("backlog", default={"items": []})
    items = payload.get("items", []) if isinstance(payload, dict) else []
    return [item for item in items if isinstance(item, dict)]


def render_report(feature: str, findings: list[SecurityFinding], accepted: set[str]) -> str:
    lines = [f"# Security report: {feature}", ""]
    if not findings:
        lines.append("No findings.")
        return "\n".join(lines) + "\n"
    lines.extend(["| ID | Severity | Title | Location | Disposition |", "|---|---|---|---|---|"])
    for finding in findings:
        if finding.severity == Severity.CRITICAL:
            disposition = "remediated"
        elif finding.severity == Severity.HIGH:
            disposition = "accepted risk" if finding.finding_id in accepted else "open"
        else:
            disposition = "backlog"
        lines.append(
            f"| {finding.finding_id} | {finding.severity} | {finding.title} | "
            f"{finding.location or '-'} | {disposition} |"
        )
    return "\n".join(lines) + "\n"
