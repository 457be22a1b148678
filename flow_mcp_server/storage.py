"""
Execution output storage.

The output node hands the final output of a run to an ExecutionStore with an
expiry timestamp. Two stores are provided: an in-memory one and a REST store
speaking the PostgREST insert/select dialect.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from flow_mcp_server.utils.config import Settings
from flow_mcp_server.utils.errors import StorageError

logger = logging.getLogger(__name__)


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ExecutionStore(ABC):
    """Persistence collaborator for final workflow outputs."""

    @abstractmethod
    async def save_output(
        self,
        execution_id: str,
        final_output: Any,
        created_at: str,
        expires_at: str,
    ) -> None:
        """
        Persist the final output of an execution.

        Raises:
            StorageError: If the write fails
        """

    @abstractmethod
    async def get_output(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a stored artifact, or None when absent or expired."""

    async def close(self):
        """Release any held resources."""


class InMemoryExecutionStore(ExecutionStore):
    """Dict-backed store. Expired artifacts are pruned on access."""

    def __init__(self):
        self.artifacts: Dict[str, Dict[str, Any]] = {}

    def _prune(self):
        now = datetime.now(timezone.utc)
        expired = [
            execution_id
            for execution_id, artifact in self.artifacts.items()
            if _parse_time(artifact["expires_at"]) <= now
        ]
        for execution_id in expired:
            logger.debug(f"Pruning expired output for execution {execution_id}")
            del self.artifacts[execution_id]

    async def save_output(self, execution_id, final_output, created_at, expires_at):
        self._prune()
        self.artifacts[execution_id] = {
            "execution_id": execution_id,
            "final_output": final_output,
            "created_at": created_at,
            "expires_at": expires_at,
        }
        logger.info(f"Stored final output for execution {execution_id} until {expires_at}")

    async def get_output(self, execution_id):
        self._prune()
        return self.artifacts.get(execution_id)


class RestExecutionStore(ExecutionStore):
    """
    Store writing rows to a PostgREST-compatible endpoint.

    Args:
        base_url: Base URL of the REST API (e.g. https://<project>/rest/v1)
        api_key: Key sent as both `apikey` and bearer token
        table: Table holding execution artifacts
        http_client: Optional shared httpx.AsyncClient
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        table: str = "alchemist_executions",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.table = table
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["apikey"] = api_key
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/{self.table}"

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def save_output(self, execution_id, final_output, created_at, expires_at):
        row = {
            "execution_id": execution_id,
            "final_output": final_output,
            "created_at": created_at,
            "expires_at": expires_at,
        }
        try:
            response = await self.http_client.post(
                self.table_url,
                headers={**self.headers, "Prefer": "return=minimal"},
                json=row,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(
                f"Failed to store output for execution {execution_id}: {str(e)}"
            ) from e
        logger.info(f"Stored final output for execution {execution_id} in {self.table}")

    async def get_output(self, execution_id):
        try:
            response = await self.http_client.get(
                self.table_url,
                headers=self.headers,
                params={"execution_id": f"eq.{execution_id}", "select": "*", "limit": "1"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(
                f"Failed to fetch output for execution {execution_id}: {str(e)}"
            ) from e

        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        if row.get("expires_at") and _parse_time(row["expires_at"]) <= datetime.now(timezone.utc):
            return None
        return row


def create_store(settings: Settings) -> ExecutionStore:
    """REST store when FLOW_STORE_URL is configured, in-memory otherwise."""
    if settings.store_url:
        logger.info(f"Using REST execution store at {settings.store_url}")
        return RestExecutionStore(settings.store_url, settings.store_key, settings.store_table)
    logger.info("Using in-memory execution store")
    return InMemoryExecutionStore()
