from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import SshPlan
from unblocker.firewall.analysis import (
    FirewallAnalysisEngine,
    FirewallAnalysisResult,
    ServiceFinding,
    csf_output_blocked,
    ip_in_output,
)
from unblocker.firewall.commands import build_command, log_search_plan_for, plan_for
from unblocker.firewall.parser import CommandOutputParser

IP = "192.0.2.123"
DENY_LINE = f"csf.deny: {IP} # lfd: (PERMBLOCK) ... Thu Dec 05 10:33:35 2024"


def _host(panel="directadmin"):
    return SimpleNamespace(fqdn="srv1.example.com", address="192.0.2.10", port_ssh=22, admin="root", panel_type=panel)


def _connected(plan, panel="directadmin"):
    session = plan.session_factory(_host(panel))
    session.connect()
    return session


def test_all_empty_findings_are_not_blocked():
    result = FirewallAnalysisResult(
        ip=IP,
        findings={name: ServiceFinding(service=name) for name in ("csf", "csf_deny", "exim", "mod_security")},
    )
    assert result.was_blocked is False
    assert result.block_sources == []


def test_one_non_empty_finding_blocks():
    result = FirewallAnalysisResult(
        ip=IP,
        findings={
            "csf": ServiceFinding(service="csf"),
            "da_bfm": ServiceFinding(service="da_bfm", raw=f"{IP} 1", has_match=True, kind="bfm"),
        },
    )
    assert result.was_blocked is True
    assert result.block_sources == ["da_bfm"]
    assert result.bfm_blocked and not result.csf_blocked


def test_ip_in_output_is_exact():
    assert ip_in_output(f"{IP} # lfd", IP)
    assert not ip_in_output("10.192.0.2.1234", IP)
    assert not ip_in_output("", IP)


def test_csf_output_blocked_markers():
    assert csf_output_blocked(DENY_LINE)
    assert csf_output_blocked("filter DENYIN 1 0 0 DROP all -- !lo * 192.0.2.123")
    assert not csf_output_blocked("csf: No matches found for 192.0.2.123 in iptables")
    assert not csf_output_blocked("")


def test_plans_are_panel_lookups():
    assert [s.service for s in plan_for("none")] == ["csf", "csf_deny", "csf_tempip"]
    assert [s.service for s in plan_for("unknown")] == ["csf", "csf_deny", "csf_tempip"]
    assert "da_bfm" in [s.service for s in plan_for("DirectAdmin")]
    assert "da_bfm" not in [s.service for s in plan_for("cpanel")]
    assert log_search_plan_for("none") == ()


def test_build_command_quotes_values():
    assert build_command("csf", IP) == f"csf -g {IP}"
    assert build_command("whitelist", IP, ttl=3600) == f"csf -ta {IP} 3600"
    with pytest.raises(ValueError):
        build_command("rm_rf", IP)


def test_bfm_whitelist_commands_are_idempotent():
    add = build_command("da_bfm_whitelist_add", IP)
    assert add.startswith(f"grep -qxF {IP} /usr/local/directadmin/data/admin/ip_whitelist")
    assert f"|| echo {IP} >> /usr/local/directadmin/data/admin/ip_whitelist" in add

    remove = build_command("da_bfm_whitelist_remove", IP)
    assert remove.startswith("[ ! -f /usr/local/directadmin/data/admin/ip_whitelist ] || sed -i ")
    assert "ip_blacklist" not in remove


def test_engine_detects_permanent_block_and_deny_match():
    plan = SshPlan([("csf -g", DENY_LINE), ("csf.deny", DENY_LINE)])
    result = FirewallAnalysisEngine().analyze(_connected(plan), _host(), IP)

    assert result.was_blocked
    assert result.permanent and not result.temporary
    assert result.deny_match == {"ip": IP, "date": "2024-12-05 10:33:35"}
    assert set(result.block_sources) == {"csf", "csf_deny"}
    assert len(plan.commands) == len(plan_for("directadmin"))


def test_engine_temporary_block_is_tagged_separately():
    temp_line = f"{IP}|0|3600|1733394815|lfd - too many failed logins"
    plan = SshPlan([("csf.tempip", temp_line)])
    result = FirewallAnalysisEngine().analyze(_connected(plan, "none"), _host("none"), IP)

    assert result.was_blocked
    assert result.temporary and not result.permanent
    assert result.findings["csf_tempip"].kind == "temporary"


def test_engine_records_failed_stage_and_continues():
    plan = SshPlan([("csf -g", "csf: command error", 1), ("csf.deny", DENY_LINE)])
    result = FirewallAnalysisEngine().analyze(_connected(plan, "none"), _host("none"), IP)

    assert result.failed_services == ["csf"]
    assert result.findings["csf"].is_empty
    assert result.was_blocked
    assert len(plan.commands) == 3


def test_engine_reports_ambiguous_deny_line():
    signals = []
    plan = SshPlan([("csf -g", f"csf.deny: {IP} # manual")])
    engine = FirewallAnalysisEngine(CommandOutputParser(on_ambiguity=signals.append))

    result = engine.analyze(_connected(plan, "none"), _host("none"), IP)

    assert result.deny_match == {"ip": IP, "date": ""}
    assert len(signals) == 1


def test_engine_ignores_mail_logs_for_blocking():
    plan = SshPlan([("exim", f"2024-12-05 {IP} authenticator failed")])
    result = FirewallAnalysisEngine().analyze(_connected(plan), _host(), IP)

    assert result.was_blocked is False
    assert "authenticator failed" in result.logs["exim"]


def test_analysis_payload_shape():
    plan = SshPlan([("csf -g", DENY_LINE)])
    payload = FirewallAnalysisEngine().analyze(_connected(plan, "none"), _host("none"), IP).analysis()

    assert payload["was_blocked"] is True
    assert payload["block_sources"] == ["csf"]
    assert payload["deny_match"]["ip"] == IP
    assert "analysis_timestamp" in payload


def test_combine_keeps_matches():
    blocked = FirewallAnalysisResult(ip=IP, findings={"csf": ServiceFinding(service="csf", has_match=True, kind="permanent")})
    clean = FirewallAnalysisResult(ip=IP, findings={"csf": ServiceFinding(service="csf")})
    assert FirewallAnalysisResult.combine(blocked, clean).was_blocked
    with pytest.raises(ValueError):
        FirewallAnalysisResult.combine()
