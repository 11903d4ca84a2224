"""
HTTP routers for the DR orchestrator
"""
