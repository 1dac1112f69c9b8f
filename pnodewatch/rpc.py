"""JSON-RPC and gossip client for pNode peers.

Every call is pure I/O: failures come back as data (``RpcUnreachable`` or
an empty result), never as exceptions.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from pnodewatch.models import NodeStats, PodInfo
from pnodewatch.stats import extract_ip, is_localhost, parse_pod, parse_stats

logger = logging.getLogger(__name__)

DEFAULT_RPC_PORTS: tuple[int, ...] = (6000, 9001)
DEFAULT_GOSSIP_PORT = 5000
DEFAULT_TIMEOUT = 5.0

_MAINNET_MARKERS = ("mainnet",)
_DEVNET_MARKERS = ("devnet", "testnet", "trynet")


@dataclass
class RpcOk:
    """A successful reply: the ``result`` object and the port that served it."""

    payload: Any
    port: int


@dataclass
class RpcError:
    """A well-formed ``{"error": ...}`` reply."""

    message: str
    port: int


@dataclass
class RpcUnreachable:
    """No candidate port produced a usable reply."""

    ip: str
    reason: str


RpcResult = RpcOk | RpcError | RpcUnreachable


class RpcClient:
    """Async client for the pNode ``/rpc`` and ``/gossip`` endpoints.

    One ``httpx.AsyncClient`` is shared by all calls.  Pass *client* to
    inject a preconfigured one (tests use ``httpx.MockTransport``); it is
    then not closed by ``aclose``.

    Args:
        timeout: Per-request timeout in seconds.
        ports: Candidate RPC ports, tried in order.
        gossip_port: Port of the ``/gossip`` endpoint.
        client: Optional ``httpx.AsyncClient`` to use.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        ports: tuple[int, ...] = DEFAULT_RPC_PORTS,
        gossip_port: int = DEFAULT_GOSSIP_PORT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not ports:
            raise ValueError("at least one RPC port is required")
        self.timeout = timeout
        self.ports = tuple(ports)
        self.gossip_port = gossip_port
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def call(
        self,
        ip: str,
        method: str,
        ports: tuple[int, ...] | None = None,
    ) -> RpcResult:
        """Call *method* on *ip*, trying each candidate port in order.

        Returns:
            ``RpcOk`` for the first port with a ``result``; otherwise the
            last ``RpcError`` seen, or ``RpcUnreachable`` if no port gave a
            well-formed reply.
        """
        candidates = ports or self.ports
        last_error: RpcError | None = None
        reason = "no ports tried"

        for port in candidates:
            url = f"http://{ip}:{port}/rpc"
            body = {"jsonrpc": "2.0", "method": method, "id": 1}
            try:
                response = await self._client.post(url, json=body, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as exc:
                reason = f"{type(exc).__name__} on port {port}"
                logger.debug("%s %s:%d failed: %s", method, ip, port, exc)
                continue
            except ValueError:
                reason = f"invalid JSON on port {port}"
                logger.debug("%s %s:%d returned invalid JSON", method, ip, port)
                continue

            if not isinstance(data, dict):
                reason = f"unexpected payload on port {port}"
                continue
            if data.get("error") is not None:
                last_error = RpcError(message=_error_message(data["error"]), port=port)
                logger.debug("%s %s:%d error: %s", method, ip, port, last_error.message)
                continue
            if "result" not in data:
                reason = f"reply without result on port {port}"
                continue
            return RpcOk(payload=data["result"], port=port)

        if last_error is not None:
            return last_error
        return RpcUnreachable(ip=ip, reason=reason)

    async def get_pods(self, ip: str) -> list[str]:
        """Peer IPs known to *ip* via ``get-pods``."""
        result = await self.call(ip, "get-pods")
        if not isinstance(result, RpcOk) or not isinstance(result.payload, dict):
            return []
        pods = result.payload.get("pods")
        if not isinstance(pods, list):
            return []
        peers = []
        for pod in pods:
            peer = extract_ip(pod.get("address")) if isinstance(pod, dict) else None
            if peer:
                peers.append(peer)
        return peers

    async def get_stats(
        self, ip: str, ports: tuple[int, ...] | None = None
    ) -> tuple[NodeStats, int] | None:
        """Live metrics of *ip* and the port that answered, or ``None``."""
        result = await self.call(ip, "get-stats", ports=ports)
        if not isinstance(result, RpcOk):
            return None
        stats = parse_stats(result.payload)
        if stats is None:
            return None
        return stats, result.port

    async def get_pods_with_stats(self, ip: str) -> list[PodInfo]:
        """The gossip view held by *ip*: one ``PodInfo`` per known pod."""
        result = await self.call(ip, "get-pods-with-stats")
        if not isinstance(result, RpcOk) or not isinstance(result.payload, dict):
            return []
        raw_pods = result.payload.get("pods")
        if not isinstance(raw_pods, list):
            return []
        return [pod for pod in (parse_pod(raw) for raw in raw_pods) if pod is not None]

    async def get_gossip_peers(self, ip: str) -> list[str]:
        """Peer IPs from the lightweight ``GET /gossip`` endpoint."""
        url = f"http://{ip}:{self.gossip_port}/gossip"
        try:
            response = await self._client.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("gossip %s failed: %s", ip, exc)
            return []

        pnodes = data.get("pnodes") if isinstance(data, dict) else None
        if not isinstance(pnodes, list):
            return []
        return [
            p["ip"]
            for p in pnodes
            if isinstance(p, dict) and isinstance(p.get("ip"), str) and p["ip"]
        ]

    async def get_cluster_marker(self, ip: str, port: int | None = None) -> str | None:
        """Ask a node which cluster it belongs to.

        Tries ``get-cluster`` and then ``get-version`` and looks for a
        network marker in the self-reported string.

        Returns:
            ``"MAINNET"``, ``"DEVNET"``, or ``None`` when the node did not
            answer or reported nothing recognizable.
        """
        ports = (port,) if port else self.ports
        for method, key in (("get-cluster", "cluster"), ("get-version", "version")):
            result = await self.call(ip, method, ports=ports)
            if not isinstance(result, RpcOk) or not isinstance(result.payload, dict):
                continue
            marker = network_marker(result.payload.get(key))
            if marker is not None:
                return marker
        return None


def network_marker(value: object) -> str | None:
    """Map a self-reported cluster/version string to a network name."""
    if not isinstance(value, str):
        return None
    lowered = value.lower()
    if any(m in lowered for m in _MAINNET_MARKERS):
        return "MAINNET"
    if any(m in lowered for m in _DEVNET_MARKERS):
        return "DEVNET"
    return None


def drop_localhost(ips: list[str]) -> list[str]:
    return [ip for ip in ips if not is_localhost(ip)]


def _error_message(error: object) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
