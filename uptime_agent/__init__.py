"""Synthetic uptime agent: scheduled http/wss/XMPP/journey checks with an instance-level rollup."""

__version__ = "0.1.0"
