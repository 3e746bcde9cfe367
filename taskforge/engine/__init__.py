"""
Orchestration Engine Module
===========================
Task graph, worker registry, execution state machine, failure recovery,
metrics and the orchestration loop.
"""
