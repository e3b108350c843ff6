"""Removal of CSF / BFM blocks and verification of the outcome.

Permanent removal always runs before temporary removal. A failed
verification is reported, never retried here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import CommandExecutionError, RemediationVerificationError
from .analysis import FirewallAnalysisResult, ip_in_output
from .commands import build_command
from .parser import filter_bfm_output

logger = logging.getLogger(__name__)


@dataclass
class UnblockResult:
    success: bool
    message: str
    performed: bool = False
    error: Optional[str] = None
    operations: List[str] = field(default_factory=list)
    output: Dict[str, str] = field(default_factory=dict)
    # set when the IP was added to the BFM allow-list
    bfm_whitelist_ttl: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "performed": self.performed,
            "operations": list(self.operations),
        }
        if self.bfm_whitelist_ttl is not None:
            out["bfm_whitelist_ttl"] = self.bfm_whitelist_ttl
        if self.error:
            out["error"] = self.error
            out["output"] = dict(self.output)
        return out


class UnblockExecutor:
    def __init__(self, whitelist_ttl: int = 86400) -> None:
        self.whitelist_ttl = int(whitelist_ttl)

    def remove(
        self,
        session,
        host,
        ip: str,
        analysis: FirewallAnalysisResult,
        *,
        whitelist_ttl: Optional[int] = None,
    ) -> UnblockResult:
        permanent = analysis.permanent
        temporary = analysis.temporary
        if analysis.csf_blocked and not (permanent or temporary):
            # Chain-level DENY without a list entry: clear both lists.
            permanent = temporary = True
        bfm = analysis.bfm_blocked and getattr(host, "panel_type", "none") == "directadmin"

        if not (permanent or temporary or bfm):
            return UnblockResult(success=True, message="No removable firewall block found")

        result = UnblockResult(success=False, message="", performed=True)
        try:
            if permanent:
                self._run(session, result, "unblock_permanent", ip)
            if temporary:
                self._run(session, result, "unblock_temporary", ip)
            if bfm:
                self._run(session, result, "da_bfm_remove", ip)

            still_present = self._verify(session, result, ip, permanent=permanent, temporary=temporary, bfm=bfm)
        except CommandExecutionError as exc:
            logger.error(
                "Unblock command failed",
                extra={"ip": ip, "host_fqdn": getattr(host, "fqdn", None), "command": exc.command, "error": str(exc)},
            )
            result.output.setdefault(exc.command, exc.output or exc.error_output)
            result.message = "Unblock command failed"
            result.error = str(exc)
            return result

        if still_present:
            error = RemediationVerificationError(ip, "\n".join(result.output.values()))
            logger.error(
                "Unblock verification failed",
                extra={"ip": ip, "host_fqdn": getattr(host, "fqdn", None), "still_present": still_present},
            )
            result.message = f"IP still present in: {', '.join(still_present)}"
            result.error = str(error)
            return result

        ttl = self.whitelist_ttl if whitelist_ttl is None else int(whitelist_ttl)
        if permanent or temporary:
            try:
                self._run(session, result, "whitelist", ip, ttl=ttl)
            except CommandExecutionError as exc:
                logger.warning("Temporary whitelist failed", extra={"ip": ip, "error": str(exc)})
        if bfm:
            # BFM has no TTL of its own; the entry is removed by the expiry job
            try:
                self._run(session, result, "da_bfm_whitelist_add", ip)
                result.bfm_whitelist_ttl = ttl
            except CommandExecutionError as exc:
                logger.warning("BFM whitelist failed", extra={"ip": ip, "error": str(exc)})

        result.success = True
        result.message = "IP unblocked"
        logger.info(
            "IP unblocked",
            extra={"ip": ip, "host_fqdn": getattr(host, "fqdn", None), "operations": result.operations},
        )
        return result

    @staticmethod
    def _run(session, result: UnblockResult, name: str, ip: str, **params) -> str:
        output = session.execute(build_command(name, ip, **params), tolerant=False)
        result.operations.append(name)
        result.output[name] = output
        return output

    def _verify(self, session, result: UnblockResult, ip: str, *, permanent: bool, temporary: bool, bfm: bool) -> List[str]:
        still_present = []
        if permanent:
            out = session.execute(build_command("csf_deny_check", ip))
            result.output["verify_csf_deny"] = out
            if ip_in_output(out, ip):
                still_present.append("csf_deny")
        if temporary:
            out = session.execute(build_command("csf_tempip_check", ip))
            result.output["verify_csf_tempip"] = out
            if ip_in_output(out, ip):
                still_present.append("csf_tempip")
        if bfm:
            out = filter_bfm_output(session.execute(build_command("da_bfm_check", ip)), ip)
            result.output["verify_da_bfm"] = out
            if out:
                still_present.append("da_bfm")
        return still_present
