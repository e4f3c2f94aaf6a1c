from __future__ import annotations

import asyncio
import ipaddress

from fluxwatch.flux_client import FluxApiClient
from fluxwatch.models import Node
from fluxwatch.session_log import SessionLog

BASE_UI_PORT = 16126
PORT_STRIDE = 10
MAX_NODES_PER_IP = 8


def node_slot_ports(slot: int) -> tuple[int, int]:
    ui_port = BASE_UI_PORT + slot * PORT_STRIDE
    return ui_port, ui_port + 1


def ip_prefix_for(position: int) -> str:
    return f"IP{position + 1}"


def url_host(ip: str) -> str:
    try:
        is_v6 = ipaddress.ip_address(ip).version == 6
    except ValueError:
        return ip
    return f"[{ip}]" if is_v6 else ip


def build_slot_node(ip: str, ip_prefix: str, slot: int) -> Node:
    ui_port, api_port = node_slot_ports(slot)
    host = url_host(ip)
    number = f"{slot + 1:02d}"
    return Node(
        id=f"{ip_prefix}-node{number}",
        name=f"{ip_prefix}-Node{number}",
        ui_url=f"http://{host}:{ui_port}",
        api_url=f"http://{host}:{api_port}",
    )


async def discover_nodes_on_ip(
    client: FluxApiClient,
    ip: str,
    ip_prefix: str,
    session_log: SessionLog,
) -> list[Node]:
    session_log.record("DISCOVERY", f"Scanning IP: {ip} with prefix {ip_prefix}")
    candidates = [build_slot_node(ip, ip_prefix, slot) for slot in range(MAX_NODES_PER_IP)]
    for candidate in candidates:
        session_log.record("DISCOVERY", f"Checking for node at {candidate.api_url}...")

    results = await asyncio.gather(*(client.probe_exists(candidate.api_url) for candidate in candidates))

    found: list[Node] = []
    for candidate, exists in zip(candidates, results):
        if exists:
            session_log.record("DISCOVERY", f"Found active node: {candidate.name}")
            found.append(candidate)
    return found


async def discover_nodes(client: FluxApiClient, ips: list[str], session_log: SessionLog) -> list[Node]:
    if not ips:
        session_log.record("DISCOVERY", "No scan IPs configured; skipping node discovery.")
        return []

    per_ip = await asyncio.gather(
        *(
            discover_nodes_on_ip(client, ip, ip_prefix_for(position), session_log)
            for position, ip in enumerate(ips)
        )
    )
    nodes = [node for group in per_ip for node in group]
    session_log.record("DISCOVERY", f"Discovery finished: {len(nodes)} node(s) across {len(ips)} IP(s).")
    return nodes
