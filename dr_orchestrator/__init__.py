"""
DR orchestrator
Scheduled encrypted backups, cross-region replication, retention and
active/passive failover for stateful workloads.
"""

__version__ = "1.0.0"
