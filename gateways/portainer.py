"""
Portainer gateway.

Drives containers through Portainer's Docker API proxy:
    {portainer_url}/api/endpoints/{endpoint_id}/docker/<engine api path>

Authentication is either an access token (X-API-Key) or username/password
exchanged for a JWT at /api/auth. A 401 triggers one re-authentication.
"""

import asyncio
import json
import logging
import struct
from typing import Any, Dict, List, Optional

import aiohttp

from gateways.base import ContainerGateway
from gateways.errors import GatewayError, GatewayTransportError, error_for_status

logger = logging.getLogger(__name__)


def demux_docker_logs(payload: bytes) -> str:
    """
    Strip Docker's 8-byte stream multiplexing headers from a log payload.

    Containers without a TTY return frames of
    [stream(1) 0 0 0 size(4, big endian)][payload]. TTY containers return
    raw text, which is passed through untouched.
    """
    if len(payload) < 8 or payload[0] not in (0, 1, 2) or payload[1:4] != b'\x00\x00\x00':
        return payload.decode('utf-8', errors='replace')

    chunks = []
    offset = 0
    while offset + 8 <= len(payload):
        size = struct.unpack('>I', payload[offset + 4:offset + 8])[0]
        start = offset + 8
        chunks.append(payload[start:start + size])
        offset = start + size
    return b''.join(chunks).decode('utf-8', errors='replace')


class PortainerGateway(ContainerGateway):
    """Gateway for one endpoint of a Portainer instance"""

    def __init__(
        self,
        portainer_url: str,
        endpoint_id: str,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: int = 60,
        pull_timeout: int = 1800,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not api_key and not (username and password):
            raise ValueError("PortainerGateway needs an api_key or username/password")

        self.portainer_url = portainer_url.rstrip('/')
        self.endpoint_id = str(endpoint_id)
        self.api_key = api_key
        self.username = username
        self.password = password
        self.timeout = timeout
        self.pull_timeout = pull_timeout
        self._session = session
        self._owns_session = session is None
        self._jwt: Optional[str] = None

    @property
    def docker_base(self) -> str:
        return f"{self.portainer_url}/api/endpoints/{self.endpoint_id}/docker"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _authenticate(self) -> None:
        """Exchange username/password for a JWT"""
        session = self._get_session()
        try:
            async with session.post(
                f"{self.portainer_url}/api/auth",
                json={"username": self.username, "password": self.password},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    text = await response.text()
                    raise GatewayError(
                        f"Portainer authentication failed with status {response.status}: {text[:200]}",
                        response.status,
                    )
                data = await response.json()
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise GatewayTransportError(f"Portainer authentication failed: {e}") from e

        self._jwt = data.get("jwt")
        if not self._jwt:
            raise GatewayError("Portainer authentication returned no token")
        logger.debug(f"Authenticated with Portainer at {self.portainer_url}")

    async def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"X-API-Key": self.api_key}
        if not self._jwt:
            await self._authenticate()
        return {"Authorization": f"Bearer {self._jwt}"}

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        target: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        expect: str = "json",
        retry_auth: bool = True,
    ):
        """
        Send one request to the Docker proxy and decode the response.

        Args:
            expect: "json", "bytes" or "none"

        Raises:
            GatewayError subclass matching the response status
        """
        session = self._get_session()
        headers = await self._headers()
        url = f"{self.docker_base}{path}"

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as response:
                if response.status == 401 and retry_auth and not self.api_key:
                    self._jwt = None
                    logger.info("Portainer token rejected, re-authenticating")
                    return await self._request(
                        method, path, action, target, params, json_body, timeout, expect, retry_auth=False
                    )

                if response.status >= 300:
                    text = await response.text()
                    detail = text
                    try:
                        detail = json.loads(text).get("message", text)
                    except (ValueError, AttributeError):
                        pass
                    raise error_for_status(response.status, f"{action} {target} failed: {detail}")

                if expect == "json":
                    return await response.json(content_type=None)
                if expect == "bytes":
                    return await response.read()
                # Drain streaming bodies (image pulls) so the call completes
                body = await response.read()
                return self._check_stream_errors(body, action, target)

        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise GatewayTransportError(f"{action} {target} failed: {e}") from e

    def _check_stream_errors(self, body: bytes, action: str, target: str) -> None:
        """Docker reports pull failures inside a 200 JSON-lines stream"""
        for line in body.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if isinstance(event, dict) and event.get("error"):
                raise GatewayError(f"{action} {target} failed: {event['error']}")
        return None

    async def inspect(self, container_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/containers/{container_id}/json", "Inspect", container_id)

    async def inspect_image(self, image: str) -> Dict[str, Any]:
        return await self._request("GET", f"/images/{image}/json", "Inspect image", image)

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            "Stop",
            container_id,
            params={"t": str(timeout)},
            timeout=self.timeout + timeout,
            expect="none",
        )

    async def remove(self, container_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            "Remove",
            container_id,
            params={"force": "true" if force else "false"},
            expect="none",
        )

    async def pull(self, repo: str, tag: str) -> None:
        await self._request(
            "POST",
            "/images/create",
            "Pull",
            f"{repo}:{tag}",
            params={"fromImage": repo, "tag": tag},
            timeout=self.pull_timeout,
            expect="none",
        )
        logger.debug(f"Pulled {repo}:{tag} via Portainer endpoint {self.endpoint_id}")

    async def create(self, config: Dict[str, Any], name: str) -> str:
        data = await self._request(
            "POST",
            "/containers/create",
            "Create",
            name,
            params={"name": name},
            json_body=config,
        )
        return data["Id"]

    async def start(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/start", "Start", container_id, expect="none")

    async def logs(self, container_id: str, tail: int = 50) -> str:
        payload = await self._request(
            "GET",
            f"/containers/{container_id}/logs",
            "Logs",
            container_id,
            params={"stdout": "1", "stderr": "1", "tail": str(tail), "timestamps": "1"},
            expect="bytes",
        )
        return demux_docker_logs(payload)

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/containers/json", "List", "containers", params={"all": "true"})

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
