"""
Resource pulse: periodic CPU, memory and disk usage report.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import psutil

from launch_agent.errors import MonitoringError
from launch_agent.models import WebhookConfig
from launch_agent.notifier import Webhook


logger = logging.getLogger(__name__)


@dataclass
class Stats:
    load: float
    disk_total: int
    disk_free: int
    disk_used: int
    memory_total: int
    memory_free: int
    memory_used: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _main_mountpoint() -> str:
    # First partition is usually '/' or the main data disk
    partitions = psutil.disk_partitions(all=False)
    if partitions:
        return partitions[0].mountpoint
    return '/'


def fetch() -> Stats:
    """
    Sample system resource usage.

    Blocks for one second while measuring CPU load.

    Raises:
        MonitoringError: If psutil cannot read the stats
    """
    try:
        load = psutil.cpu_percent(interval=1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(_main_mountpoint())
    except Exception as e:
        raise MonitoringError(f"Error fetching system stats: {e}")

    return Stats(
        load=load,
        disk_total=disk.total,
        disk_free=disk.free,
        disk_used=disk.used,
        memory_total=memory.total,
        memory_free=memory.free,
        memory_used=memory.used
    )


def build_payload(stats: Stats) -> Dict[str, Any]:
    return {'event': 'pulse', 'data': stats.to_dict()}


def pulse(stats: Stats, webhook_config: Optional[WebhookConfig]):
    """
    Send a stats report.

    Raises:
        MonitoringError: If no webhook is configured
        NotifierError: If delivery fails
    """
    if webhook_config is None:
        raise MonitoringError("Pulse webhook is not configured")

    Webhook(webhook_config).notify(build_payload(stats))
