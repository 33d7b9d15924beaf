"""Translation of security-group rules into network-policy egress rules.

Rules arrive as raw strings (``ports="80,443"``, ``destination="10.0.0.1-10.0.0.9"``)
and are compiled into the policy engine's structured form:

- ports: a single ``min-max`` range, or a comma separated list of ports
- destination: an IPv4 range (decomposed into the minimal set of CIDR
  blocks), a CIDR, or a bare IPv4 address (emitted as ``/32``)

Any invalid rule aborts the whole translation so a partial policy is never
written.
"""

from __future__ import annotations

import ipaddress
import re

from .models import (
    PROTOCOL_UDP,
    WORKLOAD_TYPE_APP,
    WORKLOAD_TYPE_BUILD,
    WORKLOAD_TYPE_LABEL,
    EntityRule,
    PolicyPort,
    PolicyRule,
    SecurityGroupRule,
    SecurityGroupWorkloads,
)
from .reconcile import PermanentReconcileError

MAX_PORT = 65535
MAX_IPV4 = 0xFFFFFFFF

POLICY_ACTION_ALLOW = "Allow"
POLICY_PROTOCOL_TCP = "TCP"
POLICY_PROTOCOL_UDP = "UDP"
POLICY_TYPE_EGRESS = "Egress"

_DECIMAL_PATTERN = re.compile(r"^[0-9]+$")


class InvalidSecurityGroupRuleError(PermanentReconcileError):
    """Raised when a rule's ports or destination cannot be parsed."""

    pass


def build_egress_rules(rules: list[SecurityGroupRule]) -> list[PolicyRule]:
    """Compile every rule; the first invalid rule aborts the translation.

    Raises:
        InvalidSecurityGroupRuleError: If any rule is malformed.
    """
    egress: list[PolicyRule] = []
    for rule in rules:
        nets = parse_destination(rule.destination)
        ports = parse_ports(rule.ports)
        egress.append(
            PolicyRule(
                action=POLICY_ACTION_ALLOW,
                protocol=policy_protocol(rule.protocol),
                destination=EntityRule(nets=nets, ports=ports),
            )
        )
    return egress


def policy_protocol(protocol: str) -> str:
    """Map a rule protocol to the policy engine's; anything but UDP is TCP."""
    if protocol == PROTOCOL_UDP:
        return POLICY_PROTOCOL_UDP
    return POLICY_PROTOCOL_TCP


def parse_port(value: str) -> int:
    """Parse one decimal port (surrounding whitespace allowed).

    Raises:
        InvalidSecurityGroupRuleError: If empty, not decimal, or above 65535.
    """
    port = value.strip()
    if not port:
        raise InvalidSecurityGroupRuleError("port value cannot be empty")
    if not _DECIMAL_PATTERN.match(port):
        raise InvalidSecurityGroupRuleError(f"invalid port {port}: not a number")
    number = int(port)
    if number > MAX_PORT:
        raise InvalidSecurityGroupRuleError(f"invalid port {port}: value out of range")
    return number


def parse_ports(ports: str) -> list[PolicyPort]:
    """Parse a ports field into policy port entries.

    ``"80-90"`` is one range; otherwise every comma separated element is a
    single-port entry.

    Raises:
        InvalidSecurityGroupRuleError: On any malformed element.
    """
    if "-" in ports:
        parts = ports.split("-")
        if len(parts) != 2:
            raise InvalidSecurityGroupRuleError(f"invalid port range format: {ports}")
        start = parse_port(parts[0])
        end = parse_port(parts[1])
        return [PolicyPort(min_port=start, max_port=end)]

    result = []
    for element in ports.split(","):
        port = parse_port(element)
        result.append(PolicyPort(min_port=port, max_port=port))
    return result


def parse_destination(destination: str) -> list[str]:
    """Parse a destination into a list of CIDR strings.

    Raises:
        InvalidSecurityGroupRuleError: If the destination is neither an IPv4
            range, a CIDR, nor an IPv4 address.
    """
    if "-" in destination:
        parts = destination.split("-")
        if len(parts) != 2:
            raise InvalidSecurityGroupRuleError(f"invalid IP range format: {destination}")
        return generate_cidrs(parts[0], parts[1])

    if "/" in destination:
        prefix = destination.rsplit("/", 1)[1]
        try:
            ipaddress.ip_network(destination, strict=False)
        except ValueError:
            pass
        else:
            # Netmask and hostmask suffixes are not CIDR notation.
            if _DECIMAL_PATTERN.match(prefix):
                return [destination]

    try:
        ipaddress.IPv4Address(destination)
    except ValueError as e:
        raise InvalidSecurityGroupRuleError(f"invalid destination: {destination}") from e
    return [f"{destination}/32"]


def ipv4_to_int(address: str) -> int:
    """Convert dotted IPv4 to a 32-bit integer.

    Raises:
        InvalidSecurityGroupRuleError: If ``address`` is not IPv4.
    """
    try:
        return int(ipaddress.IPv4Address(address))
    except ValueError as e:
        raise InvalidSecurityGroupRuleError(f"invalid IPv4 address: {address}") from e


def int_to_ipv4(value: int) -> str:
    return str(ipaddress.IPv4Address(value & MAX_IPV4))


def generate_cidrs(start_ip: str, end_ip: str) -> list[str]:
    """Decompose the inclusive range start_ip..end_ip into minimal CIDR blocks.

    Greedy: from ``start``, widen the block one prefix bit at a time while it
    stays aligned to ``start`` and does not pass ``end``; emit it and move
    ``start`` past it.

    Raises:
        InvalidSecurityGroupRuleError: On invalid addresses or start > end.
    """
    start = ipv4_to_int(start_ip)
    end = ipv4_to_int(end_ip)
    if start > end:
        raise InvalidSecurityGroupRuleError(
            f"start IP {start_ip} must be less than or equal to end IP {end_ip}"
        )

    cidrs: list[str] = []
    while end >= start:
        mask = MAX_IPV4
        length = 32

        while mask > 0:
            next_mask = (mask << 1) & MAX_IPV4
            if (start & next_mask) != start or (start | (~next_mask & MAX_IPV4)) > end:
                break
            mask = next_mask
            length -= 1

        cidrs.append(f"{int_to_ipv4(start)}/{length}")

        start |= ~mask & MAX_IPV4
        if start == MAX_IPV4:
            break
        start += 1

    return cidrs


def build_selector(workloads: SecurityGroupWorkloads) -> str:
    """Label selector matching the workload types a group applies to.

    ``{running, staging}`` gives ``<label> in { 'app', 'build' }``.
    """
    workload_types = []
    if workloads.running:
        workload_types.append(WORKLOAD_TYPE_APP)
    if workloads.staging:
        workload_types.append(WORKLOAD_TYPE_BUILD)
    values = "'" + "', '".join(workload_types) + "'"
    return f"{WORKLOAD_TYPE_LABEL} in {{ {values} }}"
