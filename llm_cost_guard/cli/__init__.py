"""
Command-line interface for LLM Cost Guard.
"""
