"""Firewall diagnostics: command table, output parsing, analysis and removal."""
