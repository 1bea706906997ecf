"""
Supervisor daemon status report.

Queries supervisord over its XML-RPC unix socket, groups processes by
their program group and reports one entry per group:

- total_uptime: the highest uptime among the group's processes
- status: fully_running / partially_running / not_running, from the
  number of RUNNING processes in the group
"""

import http.client
import logging
import socket
import xmlrpc.client
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from launch_agent.errors import MonitoringError
from launch_agent.models import SupervisorConfig, WebhookConfig
from launch_agent.notifier import Webhook


logger = logging.getLogger(__name__)

RUNNING_STATE = 20
UNKNOWN_GROUP = 'unknown'


class UnixStreamHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: float = 10):
        super().__init__('localhost', timeout=timeout)
        self.socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self.socket_path)


class UnixStreamTransport(xmlrpc.client.Transport):
    """XML-RPC transport that talks HTTP over a unix socket."""

    def __init__(self, socket_path: str):
        super().__init__()
        self.socket_path = socket_path

    def make_connection(self, host):
        return UnixStreamHTTPConnection(self.socket_path)


@dataclass
class ProcessInfo:
    name: str
    group: str = ''
    description: str = ''
    start: int = 0
    stop: int = 0
    now: int = 0
    statename: str = ''
    state: int = 0
    spawnerr: str = ''
    uptime: int = 0

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> 'ProcessInfo':
        return cls(
            name=data.get('name', ''),
            group=data.get('group', ''),
            description=data.get('description', ''),
            start=int(data.get('start') or 0),
            stop=int(data.get('stop') or 0),
            now=int(data.get('now') or 0),
            statename=data.get('statename', ''),
            state=int(data.get('state') or 0),
            spawnerr=data.get('spawnerr', '')
        )


@dataclass
class DaemonStatus:
    daemon_id: str
    status: str = 'not_running'
    error: str = ''
    group: str = ''
    statename: str = ''
    description: str = ''
    processes: List[ProcessInfo] = field(default_factory=list)
    uptime: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'daemon_id': self.daemon_id,
            'status': self.status,
            'group': self.group,
            'statename': self.statename,
            'description': self.description,
            'processes': [asdict(p) for p in self.processes],
            'total_uptime': self.uptime,
        }
        if self.error:
            data['error'] = self.error
        return data


class SupervisorClient:
    """Thin wrapper around supervisord's XML-RPC interface."""

    def __init__(self, socket_path: str, rpc_endpoint: str):
        self.socket_path = socket_path
        self.rpc_endpoint = rpc_endpoint
        self.proxy = xmlrpc.client.ServerProxy(
            rpc_endpoint,
            transport=UnixStreamTransport(socket_path)
        )

    def get_process_info(self, name: str) -> ProcessInfo:
        try:
            return ProcessInfo.from_rpc(self.proxy.supervisor.getProcessInfo(name))
        except (xmlrpc.client.Error, OSError) as e:
            raise MonitoringError(f"error calling getProcessInfo: {e}")

    def get_all_process_info(self) -> List[ProcessInfo]:
        try:
            return [ProcessInfo.from_rpc(d) for d in self.proxy.supervisor.getAllProcessInfo()]
        except (xmlrpc.client.Error, OSError) as e:
            raise MonitoringError(f"error calling getAllProcessInfo: {e}")


def update_group_status(status_map: Dict[str, DaemonStatus], info: ProcessInfo):
    """
    Add a process to its group entry, creating the entry on first sight.
    """
    if not info.group:
        info.group = UNKNOWN_GROUP

    status = status_map.get(info.group)
    if status is None:
        status = DaemonStatus(
            daemon_id=info.group,
            group=info.group,
            statename=info.statename,
            description=info.description
        )
        status_map[info.group] = status

    info.uptime = 0
    if info.state == RUNNING_STATE and info.start > 0:
        info.uptime = info.now - info.start

    status.processes.append(info)
    status.uptime = max(status.uptime, info.uptime)


def classify(status: DaemonStatus) -> str:
    running = sum(1 for p in status.processes if p.state == RUNNING_STATE)
    if status.processes and running == len(status.processes):
        return 'fully_running'
    if running > 0:
        return 'partially_running'
    return 'not_running'


def collect_daemon_status(client: SupervisorClient,
                          daemon_ids: Optional[Iterable[str]] = None) -> List[DaemonStatus]:
    """
    Build grouped status entries.

    Without daemon ids every process known to supervisord is reported. A
    daemon id whose lookup fails becomes a not_running entry carrying the
    error.

    Raises:
        MonitoringError: If the full process list cannot be retrieved
    """
    status_map: Dict[str, DaemonStatus] = {}
    daemon_ids = list(daemon_ids or [])

    if not daemon_ids:
        for info in client.get_all_process_info():
            update_group_status(status_map, info)
    else:
        for daemon_id in daemon_ids:
            try:
                info = client.get_process_info(daemon_id)
            except MonitoringError as e:
                logger.error(f"Error retrieving process info for {daemon_id}: {e}")
                status_map[daemon_id] = DaemonStatus(daemon_id=daemon_id, error=str(e))
                continue
            update_group_status(status_map, info)

    statuses = list(status_map.values())
    for status in statuses:
        status.status = classify(status)
    return statuses


def build_payload(statuses: List[DaemonStatus]) -> Dict[str, Any]:
    return {'event': 'd_stat', 'data': [s.to_dict() for s in statuses]}


def send_daemon_status(config: SupervisorConfig, webhook_config: Optional[WebhookConfig],
                       daemon_ids: Optional[Iterable[str]] = None,
                       client: Optional[SupervisorClient] = None) -> List[DaemonStatus]:
    """
    Collect grouped daemon status and deliver it through the webhook.

    Returns:
        The reported statuses

    Raises:
        MonitoringError: If status cannot be collected or no webhook is set
        NotifierError: If delivery fails
    """
    if webhook_config is None:
        raise MonitoringError("Supervisor status webhook is not configured")

    if client is None:
        client = SupervisorClient(config.socket_path, config.rpc_endpoint)
    if daemon_ids is None:
        daemon_ids = config.daemons

    statuses = collect_daemon_status(client, daemon_ids)
    Webhook(webhook_config).notify(build_payload(statuses))

    logger.info(f"Grouped supervisor statuses sent for {len(statuses)} groups")
    return statuses
