"""Async HTTP client for a running agentdesk gateway.

Every call goes through :func:`retry_with_backoff` so a gateway that is
still starting (or briefly unreachable) costs a few retries rather than a
failed command.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from agentdesk.core.errors import AttemptTimeout, OperationFailed, ServerUnavailable
from agentdesk.core.retry import retry_with_backoff


class ConsoleNotifier:
    """Rewrites one progress line per notify id in place; clears it on dismiss."""

    def __init__(self) -> None:
        self.visible: Dict[str, str] = {}

    def show(self, notify_id: str, text: str) -> None:
        previous = self.visible.get(notify_id, "")
        self.visible[notify_id] = text
        typer.secho("\r" + text.ljust(len(previous)), fg=typer.colors.YELLOW, err=True, nl=False)

    def dismiss(self, notify_id: str) -> None:
        text = self.visible.pop(notify_id, None)
        if text:
            typer.echo("\r" + " " * len(text) + "\r", err=True, nl=False)


class AgentDeskClient:
    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        attempt_timeout: Optional[float] = 30.0,
        notifier: Optional[Any] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.attempt_timeout = attempt_timeout
        self.notifier = notifier
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.api_token:
            return {}
        return {"Authorization": f"Bearer {self.api_token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async def attempt() -> Any:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                transport=self.transport,
            ) as client:
                resp = await client.request(method, path, **kwargs)
            if resp.status_code >= 400:
                try:
                    detail = resp.json().get("detail", resp.text)
                except ValueError:
                    detail = resp.text
                message = f"{method} {path} -> {resp.status_code}: {detail}"
                if resp.status_code >= 500:
                    raise ServerUnavailable(message, resp.status_code)
                raise OperationFailed(message, resp.status_code)
            return resp.json()

        return await retry_with_backoff(
            attempt,
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            attempt_timeout=self.attempt_timeout,
            retry_on=(httpx.TransportError, AttemptTimeout, ServerUnavailable),
            notifier=self.notifier,
            notify_id=f"{method} {path}",
        )

    async def dispatch(self, user_id: str, message: str, source: str = "cli") -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/tasks/dispatch",
            json={"message": message, "userId": user_id, "source": source},
        )

    async def cancel(self, task_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/tasks/{task_id}/cancel")

    async def stop_all(self, user_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/tasks/stop-all", json={"user_id": user_id})

    async def list_tasks(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {k: v for k, v in {"user_id": user_id, "status": status}.items() if v}
        data = await self._request("GET", "/tasks", params=params)
        return data["tasks"]

    async def activity(self, user_id: Optional[str] = None, task_id: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if user_id:
            params["user_id"] = user_id
        if task_id:
            params["task_id"] = task_id
        return await self._request("GET", "/activity", params=params)
