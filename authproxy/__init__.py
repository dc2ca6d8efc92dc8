"""Credential gated forward proxy with CONNECT tunneling and health probes."""

__version__ = "0.1.0"
