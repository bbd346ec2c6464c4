"""Janus gateway: one Anthropic Messages endpoint in front of OpenAI Codex, Google Antigravity and Anthropic."""

__version__ = "0.1.0"
