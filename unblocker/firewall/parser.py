"""Parsing of remote command output.

Output is either JSON (returned decoded, as is) or line oriented text
(trimmed, blank lines dropped, order preserved). Deny-list lines are reduced
to an ``{ip, date}`` pair; a partial pair is still a result, but it is
reported to the administrator because it usually means the log format
changed on the server.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from ..exceptions import ParseAmbiguityError

logger = logging.getLogger(__name__)

DEFAULT_NEEDLES = ("csf.deny", "Temporary Blocks")

IPV4_RE = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
# "Thu Dec 05 10:33:35 2024", "Dec  5 10:33:35 2024"
SYSLOG_DATE_RE = re.compile(
    r"\b(?:[A-Za-z]{3}\s+)?(?P<month>[A-Za-z]{3})\s+(?P<day>\d{1,2})\s+"
    r"(?P<time>\d{2}:\d{2}:\d{2})\s+(?P<year>\d{4})\b"
)
CANONICAL_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ParsedOutput = Union[List[str], Dict[str, Any], List[Any], Any]
DenyMatch = Dict[str, str]


def parse_output(raw: Optional[str]) -> ParsedOutput:
    """JSON first; otherwise the ordered list of non-empty trimmed lines."""
    raw = raw or ""
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        pass
    return [line.strip() for line in raw.split("\n") if line.strip()]


def contains_any(line: str, needles: Iterable[str]) -> bool:
    return any(needle in line for needle in needles)


def parse_date_from_line(line: str) -> str:
    """Find a syslog style date in ``line`` and return it as ``YYYY-MM-DD HH:MM:SS``."""
    match = SYSLOG_DATE_RE.search(line or "")
    if not match:
        return ""
    text = f"{match.group('month')} {match.group('day')} {match.group('time')} {match.group('year')}"
    try:
        return datetime.strptime(text, "%b %d %H:%M:%S %Y").strftime(CANONICAL_DATE_FORMAT)
    except ValueError as exc:
        logger.error("Exception occurred during date parsing: %s (%s)", line, exc)
        return ""


def extract_deny_match(
    lines: Sequence[str],
    needles: Sequence[str] = DEFAULT_NEEDLES,
    on_ambiguity: Optional[Callable[[ParseAmbiguityError], Any]] = None,
) -> DenyMatch:
    """Scan ``lines`` for deny-list entries and pull out the IP and the date.

    IP and date are extracted independently; when several lines match, the
    last non-empty value of each wins. The result is empty only when neither
    an IP nor a date was found. If at least one line matched and either field
    is still empty, ``on_ambiguity`` receives a ParseAmbiguityError.
    """
    ip = ""
    date = ""
    candidates: List[str] = []
    for line in lines or ():
        if not isinstance(line, str) or not contains_any(line, needles):
            continue
        candidates.append(line)
        ip_match = IPV4_RE.search(line)
        if ip_match:
            ip = ip_match.group(0)
        else:
            logger.error("IP not found in line: %s", line)
        line_date = parse_date_from_line(line)
        if line_date:
            date = line_date

    if candidates and (not ip or not date):
        signal = ParseAmbiguityError(json.dumps(candidates, ensure_ascii=False), ip=ip, date=date)
        logger.warning("Deny line parsed partially", extra={"ip": ip, "date": date, "lines": len(candidates)})
        if on_ambiguity is not None:
            try:
                on_ambiguity(signal)
            except Exception:
                logger.exception("Parse error notification failed")

    if not ip and not date:
        return {}
    return {"ip": ip, "date": date}


_LFD_REASON_RE = re.compile(r"lfd:\s*\(([^)]+)\)")
_LOCATION_RE = re.compile(r"\(([A-Z]{2}/[^)]+)\)")
_ATTEMPTS_RE = re.compile(r":\s*(\d+)\s+in\s+the\s+last\s+(\d+)\s+secs")
_DESCRIPTION_RE = re.compile(r"lfd:\s*\([^)]+\)\s+([^(:]+?)(?:\s+from\s+[0-9.]+)?(?:\s+\(|:|\s+-\s+|$)")


def describe_deny_line(line: str) -> Dict[str, Any]:
    """Human readable pieces of an lfd deny line (reason, location, attempts, date)."""
    out: Dict[str, Any] = {
        "ip": None,
        "reason_type": None,
        "reason": None,
        "location": None,
        "attempts": None,
        "timeframe": None,
        "date": parse_date_from_line(line) or None,
    }
    ip_match = IPV4_RE.search(line or "")
    if ip_match:
        out["ip"] = ip_match.group(0)
    reason = _LFD_REASON_RE.search(line or "")
    if reason:
        out["reason_type"] = reason.group(1)
    location = _LOCATION_RE.search(line or "")
    if location:
        out["location"] = location.group(1)
    attempts = _ATTEMPTS_RE.search(line or "")
    if attempts:
        out["attempts"] = int(attempts.group(1))
        out["timeframe"] = int(attempts.group(2))
    description = _DESCRIPTION_RE.search(line or "")
    if description:
        out["reason"] = description.group(1).strip()
    return out


def filter_bfm_output(raw: str, ip: str) -> str:
    """Keep DirectAdmin BFM blacklist lines whose first token is exactly ``ip``."""
    kept = []
    for line in (raw or "").split("\n"):
        parts = line.split()
        if parts and parts[0] == ip:
            kept.append(line.strip())
    return "\n".join(kept)


def process_modsecurity_json(raw: str, ip: str) -> str:
    """Render ModSecurity JSON audit records for ``ip``, one line per request."""
    rendered = []
    for line in (raw or "").split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if not isinstance(record, dict):
            continue
        transaction = record.get("transaction") or {}
        client_ip = transaction.get("client_ip")
        if ip and client_ip != ip:
            continue
        messages = record.get("messages") or transaction.get("messages") or []
        rules = [
            f"[{(msg.get('details') or {}).get('ruleId', '')}] {msg.get('message', '')}"
            for msg in messages
            if isinstance(msg, dict)
        ]
        if not rules:
            continue
        rendered.append(
            "[{ts}] IP: {ip} | URI: {uri} | Rules: {rules}".format(
                ts=transaction.get("time_stamp", ""),
                ip=client_ip,
                uri=(transaction.get("request") or {}).get("uri", ""),
                rules=", ".join(rules),
            )
        )
    return "\n".join(rendered)


class CommandOutputParser:
    """Parser bound to a parse-error notifier (the admin channel)."""

    def __init__(self, on_ambiguity: Optional[Callable[[ParseAmbiguityError], Any]] = None) -> None:
        self.on_ambiguity = on_ambiguity

    def parse(self, raw: Optional[str]) -> ParsedOutput:
        return parse_output(raw)

    def extract_deny_match(self, lines: Sequence[str], needles: Sequence[str] = DEFAULT_NEEDLES) -> DenyMatch:
        return extract_deny_match(lines, needles, on_ambiguity=self.on_ambiguity)
