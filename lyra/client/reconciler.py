"""Client-side polling of the active-task view.

Each poll replaces the local active list with the server snapshot. When a
task is seen completed for the first time the history view is refreshed and
the newest result is offered as the preview, unless the user already has a
more recent local result.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx

logger = logging.getLogger("lyra.client")


HistoryCallback = Callable[[], Awaitable[None] | None]
PreviewCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # SQLite-backed servers return naive UTC timestamps.
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if inspect.isawaitable(result):
        await result


class TaskReconciler:
    def __init__(
        self,
        base_url: str = "",
        *,
        interval: float = 3.0,
        client: httpx.AsyncClient | None = None,
        on_history_refresh: HistoryCallback | None = None,
        on_preview: PreviewCallback | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url)
        self.interval = interval
        self.on_history_refresh = on_history_refresh
        self.on_preview = on_preview

        self.user_id: str | None = None
        self.active_tasks: list[dict[str, Any]] = []
        self._handled_completed: set[str] = set()
        self._latest_local_result: datetime | None = None
        self._poll_task: asyncio.Task | None = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def set_user(self, user_id: str | None) -> None:
        """Follow the authentication state: poll for a user, pause when signed out."""

        if user_id != self.user_id:
            await self.stop()
            self.active_tasks = []
            self._handled_completed.clear()
            self._latest_local_result = None
        self.user_id = user_id

        if user_id is not None:
            self.start()

    def note_local_result(self, at: datetime | None = None) -> None:
        """Record that the user produced a result locally (e.g. a synchronous generation)."""

        self._latest_local_result = at or datetime.now(timezone.utc)

    def start(self) -> None:
        if self.user_id is None:
            raise RuntimeError("Cannot poll tasks without an authenticated user")
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="lyra-task-reconciler")

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"X-User-ID": self.user_id} if self.user_id else {}

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("task_poll_failed user_id=%s", self.user_id)
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> list[dict[str, Any]]:
        response = await self._client.get("/api/v1/tasks", params={"active": "true"}, headers=self._headers())
        response.raise_for_status()
        snapshot: list[dict[str, Any]] = response.json()["items"]

        previous_ids = {t["id"] for t in self.active_tasks}
        self.active_tasks = snapshot

        completed = [t for t in snapshot if t["status"] == "completed"]

        # Tasks that left the active view finished between two polls.
        for task_id in previous_ids - {t["id"] for t in snapshot}:
            task = await self._fetch_task(task_id)
            if task is not None and task["status"] == "completed":
                completed.append(task)

        newly_completed = [t for t in completed if t["id"] not in self._handled_completed]
        if newly_completed:
            await self._on_completed(newly_completed)

        return snapshot

    async def _fetch_task(self, task_id: str) -> dict[str, Any] | None:
        try:
            response = await self._client.get(f"/api/v1/tasks/{task_id}", headers=self._headers())
        except httpx.HTTPError:
            logger.warning("task_lookup_failed task_id=%s", task_id)
            return None
        if response.status_code != 200:
            return None
        return response.json()

    async def _on_completed(self, tasks: list[dict[str, Any]]) -> None:
        self._handled_completed.update(t["id"] for t in tasks)

        if self.on_history_refresh is not None:
            await _maybe_await(self.on_history_refresh())

        newest = max(
            tasks,
            key=lambda t: _parse_ts(t.get("completed_at")) or datetime.min.replace(tzinfo=timezone.utc),
        )
        finished_at = _parse_ts(newest.get("completed_at"))
        if self._latest_local_result is not None and (
            finished_at is None or finished_at <= self._latest_local_result
        ):
            return

        self._latest_local_result = finished_at
        if self.on_preview is not None:
            await _maybe_await(self.on_preview(newest))
