"""Load balancer control plane clients.

The rollout only needs four calls from the load balancer: the health of a
pool, adding and removing a backend, and creating a pool. LoadBalancer is
that surface; HTTPLoadBalancer implements it against a JSON control API.
"""

import httpx

from .config import check_ip_port
from .errors import LoadBalancerError
from .logger import get_logger
from .models import Backend, PoolHealth, PoolStatus


class LoadBalancer:
    """Control plane interface consumed by the workflow"""

    async def pool_health(self, pattern):
        raise NotImplementedError

    async def add_backend(self, pattern, backend):
        raise NotImplementedError

    async def remove_backend(self, pattern, backend):
        raise NotImplementedError

    async def add_pool(self, pattern, pool_type, health_checks):
        raise NotImplementedError


class HTTPLoadBalancer(LoadBalancer):
    def __init__(self, address, client=None, timeout_s=10.0):
        check_ip_port(address)
        self.address = address
        self.logger = get_logger("lb")
        self._owns_client = client is None
        self._client = client if client else httpx.AsyncClient(timeout=timeout_s)
        self.base_url = f"http://{address}"

    async def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        self.logger.debug(f"{method} {url}")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise LoadBalancerError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 300:
            raise LoadBalancerError(f"{method} {url} returned {response.status_code}: {response.text.strip()}")
        return response

    async def pool_health(self, pattern):
        response = await self._request("GET", "/v1/pool/health", params={"pattern": pattern})
        try:
            data = response.json()
            backends = [Backend(ip=b["ip"], port=int(b["port"])) for b in data.get("backends") or []]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise LoadBalancerError(f"malformed pool health for {pattern!r}: {e}") from e

        try:
            status = PoolStatus(data.get("status"))
        except ValueError:
            status = PoolStatus.UNKNOWN
        return PoolHealth(status=status, backends=backends)

    async def add_backend(self, pattern, backend):
        await self._request("POST", "/v1/pool/backend/add", json={"pattern": pattern, "backend": backend.to_dict()})
        self.logger.info(f"Added {backend.address} to pool {pattern}")

    async def remove_backend(self, pattern, backend):
        await self._request("POST", "/v1/pool/backend/remove", json={"pattern": pattern, "backend": backend.to_dict()})
        self.logger.info(f"Removed {backend.address} from pool {pattern}")

    async def add_pool(self, pattern, pool_type, health_checks):
        body = {
            "pattern": pattern,
            "type": pool_type.value,
            "health_checks": {
                "checks": [
                    {"url_path": c.url_path, "healthy_values": list(c.healthy_values)}
                    for c in health_checks.checks
                ],
                "interval_s": health_checks.interval_s,
            },
        }
        await self._request("POST", "/v1/pool", json=body)
        self.logger.info(f"Created pool {pattern} ({pool_type.value})")

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
