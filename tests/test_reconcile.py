"""Unit tests for the pure reconciliation functions.

Covers hostname derivation, address extraction, change detection and
record-type resolution.
"""

import socket
from unittest.mock import patch

import pytest

from ingress_dns.cli import (
    IngressSnapshot,
    LoadBalancerEntry,
    RecordType,
    ResourceIdentity,
    address_changed,
    derive_hostnames,
    extract_address,
    resolve_record_type,
)

IDENTITY = ResourceIdentity(namespace="web", name="frontend")


def make_snapshot(
    tls_hosts: tuple = (),
    rule_hosts: tuple = (),
    entries: tuple = (),
) -> IngressSnapshot:
    return IngressSnapshot(
        identity=IDENTITY,
        tls_hosts=tls_hosts,
        rule_hosts=rule_hosts,
        load_balancer=entries,
    )


# =============================================================================
# Hostname Derivation
# =============================================================================


class TestDeriveHostnames:
    def test_tls_hosts_win_over_rule_hosts(self) -> None:
        snapshot = make_snapshot(
            tls_hosts=("a.example.com",), rule_hosts=("b.example.com", "c.example.com")
        )
        assert derive_hostnames(snapshot) == ["a.example.com"]

    def test_rule_hosts_used_when_no_tls_hosts(self) -> None:
        snapshot = make_snapshot(rule_hosts=("b.example.com", "c.example.com"))
        assert derive_hostnames(snapshot) == ["b.example.com", "c.example.com"]

    def test_order_and_duplicates_preserved(self) -> None:
        snapshot = make_snapshot(tls_hosts=("z.example.com", "a.example.com", "z.example.com"))
        assert derive_hostnames(snapshot) == ["z.example.com", "a.example.com", "z.example.com"]

    def test_no_hosts_returns_empty_list(self) -> None:
        assert derive_hostnames(make_snapshot()) == []

    def test_address_is_not_consulted(self) -> None:
        with_address = make_snapshot(
            rule_hosts=("b.example.com",), entries=(LoadBalancerEntry(ip="203.0.113.5"),)
        )
        without_address = make_snapshot(rule_hosts=("b.example.com",))
        assert derive_hostnames(with_address) == derive_hostnames(without_address)


# =============================================================================
# Address Extraction
# =============================================================================


class TestExtractAddress:
    def test_no_entries_returns_none(self) -> None:
        assert extract_address(make_snapshot()) is None

    def test_single_ip(self) -> None:
        snapshot = make_snapshot(entries=(LoadBalancerEntry(ip="203.0.113.5"),))
        assert extract_address(snapshot) == "203.0.113.5"

    def test_hostname_preferred_over_ip_in_same_entry(self) -> None:
        snapshot = make_snapshot(
            entries=(LoadBalancerEntry(ip="203.0.113.5", hostname="lb.example.net"),)
        )
        assert extract_address(snapshot) == "lb.example.net"

    def test_hostname_in_later_entry_preferred_over_earlier_ip(self) -> None:
        snapshot = make_snapshot(
            entries=(
                LoadBalancerEntry(ip="203.0.113.5"),
                LoadBalancerEntry(hostname="lb.example.net"),
            )
        )
        assert extract_address(snapshot) == "lb.example.net"

    def test_first_ip_wins_when_no_hostnames(self) -> None:
        snapshot = make_snapshot(
            entries=(
                LoadBalancerEntry(),
                LoadBalancerEntry(ip="203.0.113.5"),
                LoadBalancerEntry(ip="203.0.113.6"),
            )
        )
        assert extract_address(snapshot) == "203.0.113.5"

    def test_ipv6_literal(self) -> None:
        snapshot = make_snapshot(entries=(LoadBalancerEntry(ip="2001:db8::1"),))
        assert extract_address(snapshot) == "2001:db8::1"

    def test_malformed_values_treated_as_absent(self) -> None:
        snapshot = make_snapshot(
            entries=(
                LoadBalancerEntry(hostname="not a hostname!"),
                LoadBalancerEntry(hostname="lb.example.net\n"),
                LoadBalancerEntry(hostname=" lb.example.net"),
                LoadBalancerEntry(ip="999.1.2.3"),
            )
        )
        assert extract_address(snapshot) is None

    def test_hostname_with_trailing_newline_falls_back_to_ip(self) -> None:
        snapshot = make_snapshot(
            entries=(LoadBalancerEntry(ip="203.0.113.5", hostname="lb.example.net\n"),)
        )
        assert extract_address(snapshot) == "203.0.113.5"

    def test_malformed_hostname_falls_back_to_ip(self) -> None:
        snapshot = make_snapshot(
            entries=(LoadBalancerEntry(ip="203.0.113.5", hostname="-bad-.example.com"),)
        )
        assert extract_address(snapshot) == "203.0.113.5"

    def test_deterministic(self) -> None:
        snapshot = make_snapshot(
            entries=(
                LoadBalancerEntry(ip="203.0.113.5"),
                LoadBalancerEntry(hostname="lb.example.net"),
            )
        )
        assert extract_address(snapshot) == extract_address(snapshot)

    def test_observed_address_property(self) -> None:
        snapshot = make_snapshot(entries=(LoadBalancerEntry(ip="203.0.113.5"),))
        assert snapshot.observed_address == "203.0.113.5"


# =============================================================================
# Change Detection
# =============================================================================


@pytest.mark.parametrize("address", [None, "", "203.0.113.5", "lb.example.net"])
def test_address_changed_false_for_equal_values(address) -> None:
    assert address_changed(address, address) is False


@pytest.mark.parametrize(
    "old,new",
    [
        (None, "203.0.113.5"),
        ("", "203.0.113.5"),
        ("203.0.113.5", None),
        ("203.0.113.5", ""),
        ("203.0.113.5", "lb.example.net"),
        ("lb.example.net", "lb2.example.net"),
    ],
)
def test_address_changed_true_for_different_values(old, new) -> None:
    assert address_changed(old, new) is True


def test_address_changed_empty_string_equals_none() -> None:
    assert address_changed("", None) is False


# =============================================================================
# Record Type Resolution
# =============================================================================


class TestResolveRecordType:
    def test_ipv4_is_a_record(self) -> None:
        assert resolve_record_type("203.0.113.5") is RecordType.A

    def test_ipv6_is_a_record(self) -> None:
        assert resolve_record_type("2001:db8::1") is RecordType.A

    def test_none_is_unresolved(self) -> None:
        assert resolve_record_type(None) is RecordType.UNRESOLVED
        assert resolve_record_type("") is RecordType.UNRESOLVED

    def test_hostname_is_cname_when_it_resolves(self) -> None:
        infos = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("198.51.100.7", 0))]
        with patch("ingress_dns.cli.socket.getaddrinfo", return_value=infos) as mock_lookup:
            assert resolve_record_type("lb.example.com") is RecordType.CNAME
            mock_lookup.assert_called_once_with("lb.example.com", None)

    def test_hostname_is_cname_when_it_does_not_resolve(self) -> None:
        """A load balancer hostname that has not propagated yet is still a CNAME target."""
        with patch(
            "ingress_dns.cli.socket.getaddrinfo",
            side_effect=socket.gaierror("Name or service not known"),
        ):
            assert resolve_record_type("lb.example.com") is RecordType.CNAME

    def test_probe_can_be_disabled(self) -> None:
        with patch("ingress_dns.cli.socket.getaddrinfo") as mock_lookup:
            assert resolve_record_type("lb.example.com", probe=False) is RecordType.CNAME
            mock_lookup.assert_not_called()

    def test_ip_literal_is_never_probed(self) -> None:
        with patch("ingress_dns.cli.socket.getaddrinfo") as mock_lookup:
            resolve_record_type("203.0.113.5")
            mock_lookup.assert_not_called()
