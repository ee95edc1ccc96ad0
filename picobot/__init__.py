"""Picobot - a personal AI agent runtime with tool routing and subagents."""

__version__ = "0.1.0"
