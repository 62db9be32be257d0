"""The narrow interface the reconciler needs from a host firewall.

The reconciler only ever talks to a Firewall, so the diff and convergence
logic does not change if iptables is swapped for nftables or a cloud
security-group API.
"""

from __future__ import annotations

from typing import Protocol

from ephemera.firewall.rules import RuleEntry


class Firewall(Protocol):
    """A single rule chain that the reconciler owns."""

    def supports(self, address: str) -> bool:
        """Whether rules for this address family can be installed."""
        ...

    async def ensure_chain(self) -> None:
        """Create the chain if it is absent. Idempotent."""
        ...

    async def list_rules(self) -> list[RuleEntry]:
        """Read every rule in the chain.

        Raises:
            RuleParseError: If any rule cannot be parsed
        """
        ...

    async def append_unique(self, rule: RuleEntry) -> None:
        """Append a rule unless an identical one is already present."""
        ...

    async def delete(self, rule: RuleEntry) -> None:
        """Delete a rule from the chain."""
        ...
