"""Durable knowledge store for lessons learned from failures."""
