"""Firewall whitelisting for instance ports.

Example usage:

    from ephemera.firewall import IPTablesFirewall, WhitelistReconciler

    reconciler = WhitelistReconciler(
        address_store=address_store,
        firewall=IPTablesFirewall("EPHEMERA-WHITELIST"),
        error_reporter=ErrorReporter(),
    )
    task = asyncio.create_task(reconciler.run(interval=60.0, shutdown=shutdown))

    # after changing whitelisted addresses
    reconciler.trigger_reconcile("api")
"""

from ephemera.firewall.base import Firewall
from ephemera.firewall.iptables import IPTablesFirewall
from ephemera.firewall.reconciler import (
    DisabledReconciler,
    ReconcileRequest,
    ReconcileResult,
    WhitelistReconciler,
)
from ephemera.firewall.rules import RuleEntry, diff_rules, parse_rule

__all__ = [
    "DisabledReconciler",
    "Firewall",
    "IPTablesFirewall",
    "ReconcileRequest",
    "ReconcileResult",
    "RuleEntry",
    "WhitelistReconciler",
    "diff_rules",
    "parse_rule",
]
