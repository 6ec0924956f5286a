"""
Host facts advertised in the agent identity.
"""

import platform
import socket
import subprocess
import time
from typing import Dict, Optional

import psutil

from fleet_agent.domain.value_objects import AgentIdentity
from fleet_agent.infrastructure.logging import get_logger


logger = get_logger(__name__)


def generate_agent_id(hostname: str) -> str:
    """Provisional id used until the backend assigns one."""
    return f"agent-{hostname}-{int(time.time())}"


def get_local_ip() -> str:
    """
    Address of the interface used for outbound traffic.

    Connecting a UDP socket sends nothing; it only selects a route.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def get_resources() -> Dict[str, int]:
    """CPU count and total memory in MB."""
    return {
        "cpu": psutil.cpu_count(logical=True) or 1,
        "memory": int(psutil.virtual_memory().total / (1024 * 1024)),
    }


def snapshot_resources() -> Dict[str, int]:
    """Capacity plus current load, sent with every heartbeat."""
    resources = get_resources()
    memory = psutil.virtual_memory()
    resources["memory_available"] = int(memory.available / (1024 * 1024))
    resources["cpu_percent"] = int(psutil.cpu_percent(interval=None))
    resources["memory_percent"] = int(memory.percent)
    return resources


def get_k6_version(binary: str = "k6", timeout: float = 5.0) -> str:
    """Version reported by `k6 version`, or "unknown"."""
    try:
        output = subprocess.run(
            [binary, "version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        ).stdout
    except (OSError, subprocess.SubprocessError):
        return "unknown"

    for line in output.splitlines():
        if "k6 v" in line:
            parts = line.split()
            if len(parts) >= 2:
                return parts[1].lstrip("v")
    return "unknown"


def collect_identity(
    tags: Optional[Dict[str, str]] = None,
    k6_binary: str = "k6",
) -> AgentIdentity:
    """Gather host facts into a provisional identity."""
    hostname = socket.gethostname()
    identity = AgentIdentity(
        agent_id=generate_agent_id(hostname),
        hostname=hostname,
        ip=get_local_ip(),
        os=platform.system().lower(),
        arch=platform.machine().lower(),
        k6_version=get_k6_version(k6_binary),
        resources=get_resources(),
        tags=dict(tags or {}),
    )
    logger.debug(
        "Host facts collected",
        agent_id=identity.agent_id,
        ip=identity.ip,
        k6_version=identity.k6_version,
        resources=identity.resources,
    )
    return identity
