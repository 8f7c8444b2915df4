"""
Core modules for LLM Cost Guard.

This package contains pricing, token usage extraction, the budget policy
engine, and the metering facade.
"""
