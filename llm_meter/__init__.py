"""
LLM Meter.

Pulls usage from LLM API providers, prices it and keeps a local snapshot
store for the dashboard and exports.
"""

__version__ = "0.1.0"
