"""
HTTP action executor.

Posts cleared actions to the storefront executor service and maps every
failure mode (network, timeout, 5xx, 4xx, malformed body) onto
ExecutorUnavailableError.

Configuration:
- ACTION_EXECUTOR_URL: base URL of the executor service (required)
- ACTION_EXECUTOR_TIMEOUT_SECONDS: request timeout (default: 30)
- ACTION_EXECUTOR_TOKEN: optional bearer token for the executor service
"""

import logging
import os
from typing import Optional

import httpx

from autopilot.services.executors.base import (
    ActionExecutor,
    ExecutorRequest,
    ExecutorResult,
)
from autopilot.services.governance_errors import ExecutorUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpActionExecutor(ActionExecutor):
    """
    Executor backed by an HTTP service.

    Request:  POST {base_url}/actions/execute
              Idempotency-Key: <approval id>
              {"tenantId", "approvalId", "actionType", "entityId", "entityType", "payload"}
    Response: {"executedActionId": "..."}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        api_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")

        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.api_token = api_token

        # HTTP client (created lazily or passed in for testing)
        self._client = client

    @classmethod
    def from_env(cls) -> "HttpActionExecutor":
        return cls(
            base_url=os.getenv("ACTION_EXECUTOR_URL", ""),
            timeout_seconds=float(
                os.getenv("ACTION_EXECUTOR_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
            ),
            api_token=os.getenv("ACTION_EXECUTOR_TOKEN"),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def execute(self, request: ExecutorRequest) -> ExecutorResult:
        client = await self._get_client()

        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": request.idempotency_key,
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        body = {
            "tenantId": request.tenant_id,
            "approvalId": request.approval_id,
            "actionType": request.action_type.value,
            "entityId": request.entity_id,
            "entityType": request.entity_type,
            "payload": request.payload,
        }

        try:
            response = await client.post(
                f"{self.base_url}/actions/execute",
                json=body,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ExecutorUnavailableError(f"Executor timed out: {e}")
        except httpx.RequestError as e:
            raise ExecutorUnavailableError(f"Network error connecting to executor: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise ExecutorUnavailableError(
                f"Executor unavailable: HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise ExecutorUnavailableError(
                f"Executor rejected action: HTTP {response.status_code} {response.text[:200]}",
                retryable=False,
            )

        try:
            data = response.json()
        except ValueError:
            raise ExecutorUnavailableError("Executor returned a non-JSON response")

        executed_action_id = data.get("executedActionId") if isinstance(data, dict) else None
        if not executed_action_id:
            raise ExecutorUnavailableError("Executor response missing executedActionId")

        logger.info(
            "Action executed",
            extra={
                "tenant_id": request.tenant_id,
                "approval_id": request.approval_id,
                "action_type": request.action_type.value,
                "executed_action_id": executed_action_id,
            },
        )
        return ExecutorResult(executed_action_id=str(executed_action_id), details=data)
