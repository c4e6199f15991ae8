# gamestatpp - Game server status probes
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# Secondary optimization and customization are carried out by @molanp.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
"""Host classification and best-effort DNS lookups."""
import ipaddress
import logging
import re

import dns.asyncresolver
import dns.exception
import idna

logger = logging.getLogger(__name__)

DNS_LIFETIME = 2.0
"""upper bound in seconds for one DNS lookup, retries included"""

_DOMAIN_PATTERN = re.compile(
    r"^(?!-)(?:[A-Za-z0-9-]{1,63}\.)+(?:[A-Za-z]{2,})$|^(xn--[A-Za-z0-9-]{1,63})\.[A-Za-z]{2,}$"
)


def is_ipv4(address: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(address), ipaddress.IPv4Address)
    except ValueError:
        return False


def is_ipv6(address: str) -> bool:
    # scoped addresses ("fe80::1%eth0") are accepted as well
    try:
        return isinstance(
            ipaddress.ip_address(address.split("%", 1)[0]), ipaddress.IPv6Address
        )
    except ValueError:
        return False


def is_domain(address: str) -> bool:
    """
    Check whether the given address is a (possibly internationalized) domain name.

    :param address: Hostname to check.
    """
    if address.lower() == "localhost":
        return True
    try:
        punycode_address = idna.encode(address).decode("utf-8")
    except idna.IDNAError:
        return False
    return bool(_DOMAIN_PATTERN.match(punycode_address))


def get_ip_type(address: str) -> str:
    """Classify an address as "IPv4", "IPv6", "Domain" or "Unknown"."""
    if is_ipv4(address):
        return "IPv4"
    if is_ipv6(address):
        return "IPv6"
    if is_domain(address):
        return "Domain"
    return "Unknown"


def _make_resolver(lifetime: float) -> dns.asyncresolver.Resolver:
    resolver = dns.asyncresolver.Resolver()
    resolver.lifetime = lifetime
    return resolver


async def resolve_host(host: str, use_ipv6: bool = False, lifetime: float = DNS_LIFETIME) -> str:
    """
    Resolve a hostname to the first A (or AAAA) record.

    This is best effort: IP literals are returned unchanged and any DNS
    failure falls back to the literal host, leaving the final word to the
    socket layer.

    :param host: Hostname or IP address.
    :param use_ipv6: Look up AAAA instead of A records.
    :param lifetime: Upper bound in seconds for the lookup.
    """
    if is_ipv4(host) or is_ipv6(host):
        return host

    rdtype = "AAAA" if use_ipv6 else "A"
    try:
        resolver = _make_resolver(lifetime)
        response = await resolver.resolve(host, rdtype)
    except dns.exception.DNSException as e:
        logger.debug(f"DNS lookup of {host} ({rdtype}) failed, using it literally: {e!r}")
        return host

    for rdata in response:
        return str(rdata.address)
    return host


async def resolve_srv(
    domain: str, service: str = "_minecraft._tcp", lifetime: float = DNS_LIFETIME
) -> tuple[str, int] | None:
    """
    Look up the SRV record of a service, e.g. ``_minecraft._tcp.example.com``.

    :param domain: Domain to look up.
    :param service: Service and protocol labels prefixed to the domain.
    :param lifetime: Upper bound in seconds for the lookup.
    :return: ``(target, port)`` of the first record, or None if there is none.
    """
    if get_ip_type(domain) != "Domain":
        return None

    try:
        resolver = _make_resolver(lifetime)
        srv_response = await resolver.resolve(f"{service}.{domain}", "SRV")
    except dns.exception.DNSException as e:
        logger.debug(f"No SRV record for {service}.{domain}: {e!r}")
        return None

    for rdata in srv_response:
        return str(rdata.target).rstrip("."), int(rdata.port)
    return None
