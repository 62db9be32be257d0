from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

ERRORS_REPORTED = Counter(
    "ephemera_errors_total",
    "Errors captured by background components",
    ["component"],
)

RECONCILE_CYCLES = Counter(
    "ephemera_whitelist_reconcile_cycles_total",
    "Whitelist reconciliation cycles",
    ["source", "outcome"],  # outcome: success/error
)

RECONCILE_DURATION = Histogram(
    "ephemera_whitelist_reconcile_duration_seconds",
    "Time spent in one whitelist reconciliation cycle",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RECONCILE_QUEUE_DEPTH = Gauge(
    "ephemera_whitelist_reconcile_queue_depth",
    "Reconcile requests waiting to be processed",
)

FIREWALL_RULE_CHANGES = Counter(
    "ephemera_firewall_rule_changes_total",
    "Rules added to or removed from the whitelist chain",
    ["action"],  # action: add/remove
)

CREDENTIAL_CHECKS = Counter(
    "ephemera_credential_checks_total",
    "Credential validity checks made by the instance cleaner",
    ["outcome"],  # outcome: valid/invalid/indeterminate
)

INSTANCES_DESTROYED = Counter(
    "ephemera_cleaner_instances_destroyed_total",
    "Instances destroyed because their credential was revoked",
)

PENDING_HANDSHAKES = Gauge(
    "ephemera_oauth_pending_handshakes",
    "API clients currently waiting for an OAuth callback",
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
