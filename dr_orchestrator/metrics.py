"""
Prometheus metrics for the DR orchestrator
"""

from prometheus_client import Counter, Histogram, Gauge

# Backup metrics
backup_runs_total = Counter(
    'dr_backup_runs_total',
    'Backup runs by outcome',
    ['workload', 'region', 'status']
)

backup_duration = Histogram(
    'dr_backup_duration_seconds',
    'Backup run duration',
    ['workload'],
    buckets=(1, 5, 15, 60, 300, 600, 1200, 1800, 3600, 7200)
)

backup_size_bytes = Gauge(
    'dr_backup_size_bytes',
    'Size of the latest encrypted artifact',
    ['workload']
)

last_successful_backup_sequence = Gauge(
    'dr_last_successful_backup_sequence',
    'Sequence of the latest succeeded backup',
    ['workload']
)

lease_contention_total = Counter(
    'dr_lease_contention_total',
    'Lease acquisitions rejected because an unexpired lease exists',
    ['workload']
)

# Restore metrics
restore_runs_total = Counter(
    'dr_restore_runs_total',
    'Restore runs by outcome',
    ['workload', 'region', 'status']
)

restore_duration = Histogram(
    'dr_restore_duration_seconds',
    'Restore run duration',
    ['workload'],
    buckets=(1, 5, 15, 60, 300, 600, 1200, 1800, 3600)
)

# Replication metrics
replication_lag_sequences = Gauge(
    'dr_replication_lag_sequences',
    'Succeeded sequences not yet confirmed in the target region',
    ['workload', 'target_region']
)

replication_cursor = Gauge(
    'dr_replication_cursor',
    'Highest sequence confirmed in the target region',
    ['workload', 'target_region']
)

replication_copies_total = Counter(
    'dr_replication_copies_total',
    'Artifact copies by outcome',
    ['target_region', 'status']
)

# Retention metrics
prune_deletions_total = Counter(
    'dr_prune_deletions_total',
    'Backup records removed by the pruner',
    ['workload', 'status']
)

prune_failures_total = Counter(
    'dr_prune_failures_total',
    'Artifact or record deletions that failed',
    ['workload']
)

# Health metrics
region_health_state = Gauge(
    'dr_region_health_state',
    'Region health (0=healthy, 1=degraded, 2=down)',
    ['region']
)

probe_failures_total = Counter(
    'dr_probe_failures_total',
    'Failed region probes',
    ['region']
)

# Failover metrics
dr_role = Gauge(
    'dr_role',
    'Current DR role (1 for the active role, 0 otherwise)',
    ['role']
)

dr_halted = Gauge(
    'dr_automation_halted',
    'Automated transitions halted (1=halted)'
)

dr_transitions_total = Counter(
    'dr_transitions_total',
    'DR state machine transitions',
    ['from_role', 'to_role']
)

# Event metrics
events_emitted_total = Counter(
    'dr_events_emitted_total',
    'Operator events emitted',
    ['severity']
)
