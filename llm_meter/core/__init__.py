"""
Core modules for LLM Meter.

This package contains pricing resolution, the error taxonomy and the
refresh service that ties providers to storage.
"""
