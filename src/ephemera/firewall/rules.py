"""Firewall rules for the instance whitelist.

A RuleEntry is the firewall-visible form of one whitelisted address: the
source address, the instance port it may reach, and the instance owner.
The owner is stored in the rule comment so that the installed rules can be
read back into RuleEntry tuples and diffed against the desired set.

Example rule printed by ``iptables -S <chain>``:

    -A EPHEMERA-WHITELIST -s 1.2.3.4/32 -p tcp -m state --state NEW
        -m tcp --dport 5555 -m comment --comment "user: user@example.com" -j ACCEPT
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from ipaddress import ip_address, ip_network

from ephemera.errors import RuleParseError

RULE_USER_EMAIL_RE = re.compile(r"^user: (.+)$")

# Long and short spellings iptables accepts for the flags we read back.
RULE_FLAGS = {
    "-s": "source",
    "--source": "source",
    "--dport": "port",
    "--destination-port": "port",
    "--comment": "comment",
}


def normalize_address(address: str) -> str:
    """Return the canonical text form of a single IP address.

    Accepts a bare address or a single-host network (``1.2.3.4/32``).

    Raises:
        ValueError: If the value is not an address or covers more than one host
    """
    address = address.strip()
    if "/" in address:
        network = ip_network(address, strict=False)
        if network.num_addresses != 1:
            raise ValueError(f"{address} is not a single address")
        return str(network.network_address)
    return str(ip_address(address))


@dataclass(frozen=True)
class RuleEntry:
    """One whitelist rule: (source address, destination port, owner)."""

    ip_address: str
    port: int
    user_email: str

    @property
    def comment(self) -> str:
        return f"user: {self.user_email}"

    def to_rule_spec(self) -> list[str]:
        """Return the iptables rule specification for this entry."""
        return [
            "-p", "tcp",
            "-m", "state", "--state", "NEW",
            "-s", self.ip_address,
            "--dport", str(self.port),
            "-m", "comment", "--comment", self.comment,
            "-j", "ACCEPT",
        ]


def parse_rule(rule: str) -> RuleEntry:
    """Build a RuleEntry from one ``-A`` line of ``iptables -S`` output.

    Raises:
        RuleParseError: If the source, port or owner comment cannot be read
    """
    try:
        tokens = shlex.split(rule)
    except ValueError as e:
        raise RuleParseError(f"failed to split rule '{rule}': {e}") from e

    values: dict[str, str] = {}
    for flag, value in zip(tokens, tokens[1:]):
        if flag in RULE_FLAGS:
            values[RULE_FLAGS[flag]] = value

    if "port" not in values or not values["port"].isdigit():
        raise RuleParseError(f"failed to find destination port in rule: '{rule}'")
    port = int(values["port"])
    if not 0 < port <= 65535:
        raise RuleParseError(f"destination port out of range in rule: '{rule}'")

    email_match = RULE_USER_EMAIL_RE.match(values.get("comment", ""))
    if email_match is None:
        raise RuleParseError(f"failed to find user email in rule: '{rule}'")

    if "source" not in values:
        raise RuleParseError(f"failed to find rule source in rule: '{rule}'")
    try:
        address = normalize_address(values["source"])
    except ValueError as e:
        raise RuleParseError(f"failed to parse rule source '{values['source']}': {e}") from e

    return RuleEntry(address, port, email_match.group(1))


def rule_difference(a: Iterable[RuleEntry], b: Iterable[RuleEntry]) -> list[RuleEntry]:
    """Return the rules in ``a`` that are not in ``b``, in ``a``'s order, once each."""
    exclude = set(b)
    seen: set[RuleEntry] = set()
    result = []
    for rule in a:
        if rule in exclude or rule in seen:
            continue
        seen.add(rule)
        result.append(rule)
    return result


def diff_rules(
    desired: Iterable[RuleEntry],
    existing: Iterable[RuleEntry],
) -> tuple[list[RuleEntry], list[RuleEntry]]:
    """Compute the changes that turn ``existing`` into ``desired``.

    Tuples are compared whole, so a rule whose owner changed shows up once
    in each list and is replaced rather than edited.

    Returns:
        (to_add, to_remove)
    """
    desired = list(desired)
    existing = list(existing)
    return rule_difference(desired, existing), rule_difference(existing, desired)
