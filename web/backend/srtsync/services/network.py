"""
Network Addressing

Interface listing, local/public address detection and sender SRT URLs.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import ipaddress
import logging
import socket
from typing import Optional
from urllib.parse import urlencode

import httpx
import netifaces

from ..models import AddressMode, Channel, NetworkInterface, ServerConfig

logger = logging.getLogger(__name__)

PUBLIC_IP_URL = "https://api.ipify.org?format=json"
PUBLIC_IP_TIMEOUT = 5.0


def detect_local_address() -> Optional[str]:
    """IPv4 address of the interface holding the default route."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on UDP sends nothing; it only selects a route
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError as e:
        logger.warning(f"Could not detect local address: {e}")
        return None
    finally:
        sock.close()


def list_interfaces() -> list[NetworkInterface]:
    """Every non-loopback IPv4 address, one entry per address."""
    interfaces = []
    for iface_name in netifaces.interfaces():
        try:
            addrs = netifaces.ifaddresses(iface_name)
        except ValueError:
            # Interface vanished between listing and lookup
            logger.debug(f"Skipping interface {iface_name}")
            continue

        for entry in addrs.get(netifaces.AF_INET, []):
            address = entry.get("addr")
            try:
                if address is None or ipaddress.IPv4Address(address).is_loopback:
                    continue
            except ValueError:
                continue
            interfaces.append(NetworkInterface(
                name=iface_name,
                address=address,
                netmask=entry.get("netmask")
            ))
    return interfaces


async def fetch_public_address(client: Optional[httpx.AsyncClient] = None) -> Optional[str]:
    """Ask an external service for this host's public IPv4 address."""
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=PUBLIC_IP_TIMEOUT) as owned:
                response = await owned.get(PUBLIC_IP_URL)
        else:
            response = await client.get(PUBLIC_IP_URL, timeout=PUBLIC_IP_TIMEOUT)
        response.raise_for_status()
        return response.json().get("ip")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Unable to detect public IP: {e}")
        return None


def advertised_address(server: ServerConfig) -> str:
    """Host a sender should connect to, per the addressing mode."""
    if server.address_mode == AddressMode.PUBLIC and server.public_address:
        return server.public_address
    return server.local_address or detect_local_address() or "0.0.0.0"


def channel_srt_url(channel: Channel, server: ServerConfig, host: Optional[str] = None) -> str:
    """Caller-mode SRT URL for a sender pushing into this channel."""
    host = host or advertised_address(server)
    port = channel.srt_port
    if server.address_mode == AddressMode.PUBLIC and server.public_port:
        port = server.public_port + channel.number - 1

    params = {"mode": "caller", "latency": (channel.latency if channel.latency is not None else server.latency) * 1000}
    if channel.stream_id:
        params["streamid"] = channel.stream_id
    return f"srt://{host}:{port}?{urlencode(params)}"
