"""Tests for the iptables backend."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from ephemera.errors import CommandError, FirewallError, RuleParseError
from ephemera.firewall.iptables import (
    IPTablesFirewall,
    parse_chain_names,
    parse_rule_listing,
)
from ephemera.firewall.rules import RuleEntry

CHAINS_OUTPUT = """\
-P INPUT ACCEPT
-P FORWARD DROP
-P OUTPUT ACCEPT
-N DOCKER
-A INPUT -j DOCKER
"""

RULES_OUTPUT = """\
-N EPHEMERA-WHITELIST
-A EPHEMERA-WHITELIST -s 1.2.3.4/32 -p tcp -m state --state NEW -m tcp --dport 5555 -m comment --comment "user: a@example.com" -j ACCEPT
-A EPHEMERA-WHITELIST -s 9.9.9.9/32 -p tcp -m state --state NEW -m tcp --dport 6000 -m comment --comment "user: b@example.com" -j ACCEPT
"""

RULE_A = RuleEntry("1.2.3.4", 5555, "a@example.com")
RULE_B = RuleEntry("9.9.9.9", 6000, "b@example.com")


class TestListingParsers:
    """Tests for the iptables output parsers."""

    def test_parse_chain_names(self):
        """Test policies and user chains are both listed."""
        assert parse_chain_names(CHAINS_OUTPUT) == ["INPUT", "FORWARD", "OUTPUT", "DOCKER"]

    def test_parse_rule_listing(self):
        """Test listed rules are parsed into entries."""
        assert parse_rule_listing(RULES_OUTPUT) == [RULE_A, RULE_B]

    def test_parse_empty_chain(self):
        """Test a chain with only its declaration has no rules."""
        assert parse_rule_listing("-N EPHEMERA-WHITELIST\n") == []

    def test_parse_ignores_protocol_and_match_columns(self):
        """Test a rule without the usual protocol and state matches still parses."""
        listing = (
            "-N EPHEMERA-WHITELIST\n"
            '-A EPHEMERA-WHITELIST -s 1.2.3.4/32 --dport 5555 '
            '-m comment --comment "user: a@example.com" -j ACCEPT\n'
        )
        assert parse_rule_listing(listing) == [RULE_A]

    def test_comment_with_spaces_and_quotes(self):
        """Test the owner comment is read whole even when it needs quoting."""
        listing = (
            "-A EPHEMERA-WHITELIST -s 1.2.3.4/32 -p tcp --dport 5555 "
            '-m comment --comment "user: o\'brien@example.com" -j ACCEPT\n'
        )
        assert parse_rule_listing(listing)[0].user_email == "o'brien@example.com"

    def test_unparseable_rule_fails_whole_listing(self):
        """Test one foreign rule makes the listing fail."""
        listing = RULES_OUTPUT + "-A EPHEMERA-WHITELIST -j DROP\n"
        with pytest.raises(RuleParseError):
            parse_rule_listing(listing)

    def test_unexpected_line_fails(self):
        """Test a line that is not a rule is rejected."""
        listing = RULES_OUTPUT + "Chain EPHEMERA-WHITELIST (1 references)\n"
        with pytest.raises(RuleParseError, match="unexpected rule format"):
            parse_rule_listing(listing)


class TestSupports:
    """Tests for the address families a chain accepts."""

    def test_ipv4_chain(self):
        """Test an iptables chain accepts IPv4 only."""
        firewall = IPTablesFirewall("EPHEMERA-WHITELIST")
        assert firewall.supports("1.2.3.4")
        assert not firewall.supports("2001:db8::1")
        assert not firewall.supports("not-an-address")

    def test_ipv6_chain(self):
        """Test an ip6tables chain accepts IPv6 only."""
        firewall = IPTablesFirewall("EPHEMERA-WHITELIST", binary="ip6tables", ip_version=6)
        assert firewall.supports("2001:db8::1")
        assert not firewall.supports("1.2.3.4")


class TestIPTablesFirewall:
    """Tests for IPTablesFirewall command invocations."""

    @pytest.fixture
    def run(self):
        with patch("ephemera.firewall.iptables.run_command", new_callable=AsyncMock) as mock:
            yield mock

    @staticmethod
    def _args(call) -> list[str]:
        return list(call.args)

    @pytest.mark.asyncio
    async def test_ensure_chain_creates_missing_chain(self, run):
        """Test the chain is created when absent."""
        run.side_effect = [CHAINS_OUTPUT, ""]
        await IPTablesFirewall("EPHEMERA-WHITELIST").ensure_chain()

        assert self._args(run.call_args_list[0]) == ["iptables", "-w", "-t", "filter", "-S"]
        assert self._args(run.call_args_list[1]) == [
            "iptables", "-w", "-t", "filter", "-N", "EPHEMERA-WHITELIST",
        ]

    @pytest.mark.asyncio
    async def test_ensure_chain_existing_chain(self, run):
        """Test nothing is created when the chain exists."""
        run.return_value = CHAINS_OUTPUT + "-N EPHEMERA-WHITELIST\n"
        await IPTablesFirewall("EPHEMERA-WHITELIST").ensure_chain()
        assert run.call_count == 1

    @pytest.mark.asyncio
    async def test_ensure_chain_list_failure(self, run):
        """Test a failed chain listing raises FirewallError."""
        run.side_effect = CommandError(["iptables"], 4, stderr="permission denied")
        with pytest.raises(FirewallError, match="unable to determine iptables chains"):
            await IPTablesFirewall("EPHEMERA-WHITELIST").ensure_chain()

    @pytest.mark.asyncio
    async def test_list_rules(self, run):
        """Test rules are listed in rule-spec form."""
        run.return_value = RULES_OUTPUT
        rules = await IPTablesFirewall("EPHEMERA-WHITELIST").list_rules()

        assert rules == [RULE_A, RULE_B]
        assert self._args(run.call_args) == [
            "iptables", "-w", "-t", "filter", "-S", "EPHEMERA-WHITELIST",
        ]

    @pytest.mark.asyncio
    async def test_append_unique_skips_existing_rule(self, run):
        """Test a rule that already exists is not appended again."""
        run.return_value = ""
        await IPTablesFirewall("EPHEMERA-WHITELIST").append_unique(RULE_A)

        assert run.call_count == 1
        assert self._args(run.call_args)[4:6] == ["-C", "EPHEMERA-WHITELIST"]

    @pytest.mark.asyncio
    async def test_append_unique_appends_missing_rule(self, run):
        """Test a missing rule is appended after the existence check."""
        run.side_effect = [CommandError(["iptables"], 1, stderr="Bad rule"), ""]
        await IPTablesFirewall("EPHEMERA-WHITELIST").append_unique(RULE_A)

        append_args = self._args(run.call_args_list[1])
        assert append_args[4:6] == ["-A", "EPHEMERA-WHITELIST"]
        assert append_args[6:] == RULE_A.to_rule_spec()

    @pytest.mark.asyncio
    async def test_check_failure_is_not_treated_as_missing(self, run):
        """Test only exit status 1 from -C means the rule is missing."""
        run.side_effect = CommandError(["iptables"], 2, stderr="bad argument")
        with pytest.raises(FirewallError, match="failed to check rule"):
            await IPTablesFirewall("EPHEMERA-WHITELIST").append_unique(RULE_A)

    @pytest.mark.asyncio
    async def test_delete(self, run):
        """Test deleting a rule."""
        run.return_value = ""
        await IPTablesFirewall("EPHEMERA-WHITELIST", table="raw").delete(RULE_B)

        args = self._args(run.call_args)
        assert args[:6] == ["iptables", "-w", "-t", "raw", "-D", "EPHEMERA-WHITELIST"]
        assert args[6:] == RULE_B.to_rule_spec()

    @pytest.mark.asyncio
    async def test_delete_failure(self, run):
        """Test a failed delete raises FirewallError."""
        run.side_effect = CommandError(["iptables"], 1, stderr="Bad rule")
        with pytest.raises(FirewallError, match="failed to remove rule"):
            await IPTablesFirewall("EPHEMERA-WHITELIST").delete(RULE_B)
