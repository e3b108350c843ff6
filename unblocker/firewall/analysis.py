"""Firewall analysis: run the panel's diagnostic plan and aggregate findings.

Stages run one after another over a single SSH session. A stage whose
command fails is recorded as an empty finding and the analysis goes on;
connection loss is not a stage failure and propagates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..exceptions import CommandExecutionError
from .commands import ServiceStage, build_command, plan_for
from .parser import (
    CommandOutputParser,
    describe_deny_line,
    filter_bfm_output,
    parse_output,
    process_modsecurity_json,
)

logger = logging.getLogger(__name__)

PERMANENT = "permanent"
TEMPORARY = "temporary"
FIREWALL = "firewall"
BFM = "bfm"
WAF = "waf"


def ip_in_output(output: str, ip: str) -> bool:
    """True when ``ip`` appears as a whole address (not as part of a longer one)."""
    if not output or not ip:
        return False
    pattern = r"(?<![\w.:])" + re.escape(ip) + r"(?![\w.:])"
    return re.search(pattern, output) is not None


def csf_output_blocked(output: str) -> bool:
    """Interpret ``csf -g`` output."""
    if not output:
        return False
    if any(marker in output for marker in ("csf.deny:", "chain_DENY", "Temporary Blocks", "DENYIN")):
        return True
    return "DENY" in output and "No matches found for" not in output and "No blocked:" not in output


def parse_output_lines(raw: str) -> List[str]:
    parsed = parse_output(raw)
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [raw.strip()] if raw.strip() else []


@dataclass
class ServiceFinding:
    """Normalized result of one diagnostic stage."""

    service: str
    raw: str = ""
    parsed: Any = field(default_factory=list)
    has_match: bool = False
    kind: Optional[str] = None
    deny_match: Dict[str, str] = field(default_factory=dict)
    details: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.has_match


@dataclass
class FirewallAnalysisResult:
    ip: str
    panel: str = "none"
    findings: Dict[str, ServiceFinding] = field(default_factory=dict)
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def was_blocked(self) -> bool:
        return any(f.has_match for f in self.findings.values())

    @property
    def block_sources(self) -> List[str]:
        return [name for name, f in self.findings.items() if f.has_match]

    @property
    def failed_services(self) -> List[str]:
        return [name for name, f in self.findings.items() if f.error]

    @property
    def error_count(self) -> int:
        return len(self.failed_services)

    def _has_kind(self, kind: str) -> bool:
        return any(f.has_match and f.kind == kind for f in self.findings.values())

    @property
    def permanent(self) -> bool:
        return self._has_kind(PERMANENT)

    @property
    def temporary(self) -> bool:
        return self._has_kind(TEMPORARY)

    @property
    def csf_blocked(self) -> bool:
        return any(f.has_match and f.kind in (PERMANENT, TEMPORARY, FIREWALL) for f in self.findings.values())

    @property
    def bfm_blocked(self) -> bool:
        return self._has_kind(BFM)

    @property
    def deny_match(self) -> Dict[str, str]:
        for finding in self.findings.values():
            if finding.deny_match:
                return dict(finding.deny_match)
        return {}

    @property
    def logs(self) -> Dict[str, str]:
        return {name: finding.raw for name, finding in self.findings.items()}

    def blocking_details(self) -> List[Dict[str, Any]]:
        details: List[Dict[str, Any]] = []
        for finding in self.findings.values():
            if finding.has_match:
                details.extend(finding.details)
        return details

    def analysis(self) -> Dict[str, Any]:
        return {
            "was_blocked": self.was_blocked,
            "block_sources": self.block_sources,
            "permanent": self.permanent,
            "temporary": self.temporary,
            "deny_match": self.deny_match,
            "failed_services": self.failed_services,
            "blocking_details": self.blocking_details(),
            "analysis_timestamp": self.analyzed_at.isoformat(),
        }

    @classmethod
    def combine(cls, *results: "FirewallAnalysisResult") -> "FirewallAnalysisResult":
        """Merge several results for the same IP; later findings win per service."""
        if not results:
            raise ValueError("combine() needs at least one result")
        merged = cls(ip=results[0].ip, panel=results[0].panel)
        for result in results:
            for name, finding in result.findings.items():
                current = merged.findings.get(name)
                if current is None or finding.has_match or not current.has_match:
                    merged.findings[name] = finding
        return merged


class FirewallAnalysisEngine:
    """Drive the diagnostic plan for one host and one IP."""

    def __init__(self, parser: Optional[CommandOutputParser] = None) -> None:
        self.parser = parser or CommandOutputParser()

    def analyze(self, session, host, ip: str) -> FirewallAnalysisResult:
        panel = getattr(host, "panel_type", None) or "none"
        result = FirewallAnalysisResult(ip=ip, panel=panel)
        for stage in plan_for(panel):
            result.findings[stage.service] = self._run_stage(session, host, stage, ip)

        logger.info(
            "Firewall analysis completed",
            extra={
                "ip": ip,
                "host_fqdn": getattr(host, "fqdn", None),
                "was_blocked": result.was_blocked,
                "block_sources": result.block_sources,
                "failed_services": result.failed_services,
            },
        )
        return result

    def _run_stage(self, session, host, stage: ServiceStage, ip: str) -> ServiceFinding:
        command = build_command(stage.command, ip)
        try:
            raw = session.execute(command)
        except CommandExecutionError as exc:
            logger.error(
                "Firewall check command failed",
                extra={"service": stage.service, "command": stage.command, "host_fqdn": getattr(host, "fqdn", None), "error": str(exc)},
            )
            return ServiceFinding(service=stage.service, error=str(exc))
        return self.classify(stage.service, raw or "", ip)

    def classify(self, service: str, raw: str, ip: str) -> ServiceFinding:
        """Turn raw output of ``service`` into a finding."""
        if service == "csf":
            return self._classify_csf(raw)
        if service in ("csf_deny", "csf_tempip"):
            lines = [line for line in parse_output_lines(raw) if ip_in_output(line, ip) and "No matches" not in line]
            matched = bool(lines)
            return ServiceFinding(
                service=service,
                raw=raw,
                parsed=lines,
                has_match=matched,
                kind=(PERMANENT if service == "csf_deny" else TEMPORARY) if matched else None,
                details=[describe_deny_line(line) for line in lines],
            )
        if service == "da_bfm":
            filtered = filter_bfm_output(raw, ip)
            return ServiceFinding(
                service=service,
                raw=filtered,
                parsed=parse_output_lines(filtered),
                has_match=bool(filtered),
                kind=BFM if filtered else None,
            )
        if service == "mod_security":
            processed = process_modsecurity_json(raw, ip)
            return ServiceFinding(
                service=service,
                raw=processed,
                parsed=parse_output_lines(processed),
                has_match=bool(processed),
                kind=WAF if processed else None,
            )
        # exim / dovecot and anything unknown: context only
        return ServiceFinding(service=service, raw=raw, parsed=parse_output_lines(raw))

    def _classify_csf(self, raw: str) -> ServiceFinding:
        parsed = self.parser.parse(raw)
        lines = parsed if isinstance(parsed, list) else []
        blocked = csf_output_blocked(raw)
        kind = None
        if blocked:
            if "Temporary Blocks" in raw:
                kind = TEMPORARY
            elif "csf.deny" in raw:
                kind = PERMANENT
            else:
                kind = FIREWALL
        deny_match = self.parser.extract_deny_match([str(line) for line in lines])
        details = [describe_deny_line(str(line)) for line in lines if "csf.deny" in str(line) or "Temporary Blocks" in str(line)]
        return ServiceFinding(
            service="csf",
            raw=raw,
            parsed=parsed,
            has_match=blocked or bool(deny_match),
            kind=kind or (PERMANENT if deny_match else None),
            deny_match=deny_match,
            details=details,
        )
