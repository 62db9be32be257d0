"""iptables backend for the whitelist chain.

Shells out to ``iptables -w`` so that concurrent callers (for example a
configuration management run) wait for the xtables lock instead of failing.
"""

from __future__ import annotations

from ipaddress import ip_address

import structlog

from ephemera.core.process import run_command
from ephemera.errors import CommandError, FirewallError, RuleParseError
from ephemera.firewall.rules import RuleEntry, parse_rule

logger = structlog.get_logger()

# iptables -C exits with 1 when the rule does not exist
RULE_MISSING_STATUS = 1

IPTABLES_TIMEOUT = 30.0


def parse_chain_names(listing: str) -> list[str]:
    """Extract chain names from ``iptables -S`` output."""
    chains = []
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] in ("-P", "-N"):
            chains.append(parts[1])
    return chains


def parse_rule_listing(listing: str) -> list[RuleEntry]:
    """Parse ``iptables -S <chain>`` output into RuleEntry tuples.

    The ``-N`` line declaring the chain is skipped. Every other line must be
    an ``-A`` rule carrying a source, a destination port and an owner
    comment.

    Raises:
        RuleParseError: If any rule line cannot be parsed. Partial results
            are never returned.
    """
    rules = []
    for line in listing.splitlines():
        line = line.strip()
        if not line or line.startswith(("-N ", "-P ")):
            continue
        if not line.startswith("-A "):
            raise RuleParseError(f"unexpected rule format: '{line}'")
        rules.append(parse_rule(line))
    return rules


class IPTablesFirewall:
    """A Firewall backed by one iptables chain.

    iptables only installs IPv4 rules; pass ``binary="ip6tables"`` with
    ``ip_version=6`` for an IPv6 chain.
    """

    def __init__(
        self,
        chain: str,
        table: str = "filter",
        binary: str = "iptables",
        ip_version: int = 4,
    ):
        self.chain = chain
        self.table = table
        self.ip_version = ip_version
        self._binary = binary

    def supports(self, address: str) -> bool:
        try:
            return ip_address(address).version == self.ip_version
        except ValueError:
            return False

    async def _run(self, *args: str, message: str, log_output: bool = False) -> str:
        return await run_command(
            self._binary,
            "-w",
            "-t",
            self.table,
            *args,
            message=message,
            timeout=IPTABLES_TIMEOUT,
            log_output=log_output,
            chain=self.chain,
        )

    async def ensure_chain(self) -> None:
        try:
            listing = await self._run("-S", message="Listed iptables chains")
        except CommandError as e:
            raise FirewallError("unable to determine iptables chains") from e

        if self.chain in parse_chain_names(listing):
            return

        try:
            await self._run("-N", self.chain, message="Created iptables chain")
        except CommandError as e:
            raise FirewallError(f"failed to create chain {self.chain}") from e

    async def list_rules(self) -> list[RuleEntry]:
        try:
            listing = await self._run("-S", self.chain, message="Listed whitelist rules")
        except CommandError as e:
            raise FirewallError("failed to list rules in chain") from e
        return parse_rule_listing(listing)

    async def exists(self, rule: RuleEntry) -> bool:
        try:
            await self._run("-C", self.chain, *rule.to_rule_spec(), message="Checked rule")
        except CommandError as e:
            if e.returncode == RULE_MISSING_STATUS:
                return False
            raise FirewallError(f"failed to check rule: {rule}") from e
        return True

    async def append_unique(self, rule: RuleEntry) -> None:
        if await self.exists(rule):
            logger.debug("Rule already present", chain=self.chain, rule=rule)
            return
        try:
            await self._run("-A", self.chain, *rule.to_rule_spec(), message="Appended rule")
        except CommandError as e:
            raise FirewallError(f"failed to add rule to chain: {rule}") from e

    async def delete(self, rule: RuleEntry) -> None:
        try:
            await self._run("-D", self.chain, *rule.to_rule_spec(), message="Deleted rule")
        except CommandError as e:
            raise FirewallError(f"failed to remove rule from chain: {rule}") from e
