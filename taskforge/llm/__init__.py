"""
Reasoning Backend Module
========================
Backend protocol, the Claude client, an offline echo backend and the
concurrency-bounded gateway the engine calls through.
"""
