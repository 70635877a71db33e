"""Relay that runs ACP coding agents locally or over SSH and exposes them over HTTP."""

__version__ = "0.1.0"
