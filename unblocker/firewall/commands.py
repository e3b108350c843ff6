"""Command templates and per-panel diagnostic plans.

Panel dispatch is a table lookup: adding a panel type means adding a plan
here, the analysis engine stays the same.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Dict, Tuple

BFM_BLACKLIST = "/usr/local/directadmin/data/admin/ip_blacklist"
BFM_WHITELIST = "/usr/local/directadmin/data/admin/ip_whitelist"

COMMANDS: Dict[str, str] = {
    "csf": "csf -g {ip}",
    "csf_deny_check": "cat /etc/csf/csf.deny | grep {ip} || true",
    "csf_tempip_check": "cat /var/lib/csf/csf.tempip | grep {ip} || true",
    "mod_security_da": "cat /var/log/nginx/modsec_audit.log | grep {ip} || true",
    "mod_security_cpanel": "cat /usr/local/apache/logs/modsec_audit.log | grep {ip} || true",
    "exim_directadmin": "cat /var/log/exim/mainlog | grep -a {ip} | grep 'authenticator failed' || true",
    "dovecot_directadmin": "cat /var/log/mail.log | grep -a {ip} | grep 'auth failed' || true",
    "exim_cpanel": "cat /var/log/exim_mainlog | grep -a {ip} | grep 'authenticator failed' || true",
    "dovecot_cpanel": "cat /var/log/maillog | grep -a {ip} | grep 'auth failed' || true",
    "da_bfm_check": "cat " + BFM_BLACKLIST + " | grep -E {ip_anchored} || true",
    "da_bfm_remove": "sed -i {bfm_sed} " + BFM_BLACKLIST,
    "da_bfm_whitelist_add": "grep -qxF {ip} " + BFM_WHITELIST + " 2>/dev/null || echo {ip} >> " + BFM_WHITELIST,
    "da_bfm_whitelist_remove": "[ ! -f " + BFM_WHITELIST + " ] || sed -i {bfm_sed} " + BFM_WHITELIST,
    "unblock_permanent": "csf -dr {ip}",
    "unblock_temporary": "csf -tr {ip}",
    "whitelist": "csf -ta {ip} {ttl}",
}


@dataclass(frozen=True)
class ServiceStage:
    """One analysis stage: a logical service name and the command it runs."""

    service: str
    command: str


PANEL_PLANS: Dict[str, Tuple[ServiceStage, ...]] = {
    "directadmin": (
        ServiceStage("csf", "csf"),
        ServiceStage("csf_deny", "csf_deny_check"),
        ServiceStage("csf_tempip", "csf_tempip_check"),
        ServiceStage("da_bfm", "da_bfm_check"),
        ServiceStage("exim", "exim_directadmin"),
        ServiceStage("dovecot", "dovecot_directadmin"),
        ServiceStage("mod_security", "mod_security_da"),
    ),
    "cpanel": (
        ServiceStage("csf", "csf"),
        ServiceStage("csf_deny", "csf_deny_check"),
        ServiceStage("csf_tempip", "csf_tempip_check"),
        ServiceStage("exim", "exim_cpanel"),
        ServiceStage("dovecot", "dovecot_cpanel"),
        ServiceStage("mod_security", "mod_security_cpanel"),
    ),
    "none": (
        ServiceStage("csf", "csf"),
        ServiceStage("csf_deny", "csf_deny_check"),
        ServiceStage("csf_tempip", "csf_tempip_check"),
    ),
}

# Mail logs searched by the anonymous flow to see whether the IP used the server.
LOG_SEARCH_PLANS: Dict[str, Tuple[ServiceStage, ...]] = {
    "directadmin": (ServiceStage("exim", "exim_directadmin"), ServiceStage("dovecot", "dovecot_directadmin")),
    "cpanel": (ServiceStage("exim", "exim_cpanel"), ServiceStage("dovecot", "dovecot_cpanel")),
    "none": (),
}


def plan_for(panel: str) -> Tuple[ServiceStage, ...]:
    return PANEL_PLANS.get((panel or "").strip().lower(), PANEL_PLANS["none"])


def log_search_plan_for(panel: str) -> Tuple[ServiceStage, ...]:
    return LOG_SEARCH_PLANS.get((panel or "").strip().lower(), ())


def build_command(name: str, ip: str, **params) -> str:
    """Render command ``name`` for ``ip``. Every value is shell quoted."""
    try:
        template = COMMANDS[name]
    except KeyError:
        raise ValueError(f"Unknown command: {name}") from None
    escaped = re.escape(ip)
    values = {
        "ip": shlex.quote(ip),
        "ip_anchored": shlex.quote(f"^{escaped}(\\s|$)"),
        "bfm_sed": shlex.quote(f"/^{escaped}\\(\\s\\|$\\)/d"),
        "ttl": shlex.quote(str(int(params.get("ttl", 86400)))),
    }
    return template.format(**values)
