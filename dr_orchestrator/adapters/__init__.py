"""
Adapters binding the orchestrator's interfaces to real systems
"""
