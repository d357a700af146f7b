"""HTTP adapter for the remote item store.

RestItemStore implements ItemStore, PipelineDirectory and BoardMaintenance
against the CRM's JSON API using httpx.AsyncClient. It does not retry:
the engine wraps every call in core.retry, which needs to see the raw error
category.

Error mapping:
- httpx transport failures and 502/503/504 become TransientRemoteError.
- Any other non-2xx answer becomes a RemoteRejectedError built from the
  body's message and code (NotFoundInPipelineError when it says so).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from src.kanban_sync.board.schemas import (
    BoardItem,
    ItemKind,
    PipelineTopology,
    Tag,
    board_item_adapter,
    board_items_adapter,
    tags_adapter,
    topologies_adapter,
)
from src.kanban_sync.board.store import BoardMaintenance, ItemStore, PipelineDirectory
from src.kanban_sync.core.errors import TransientRemoteError, rejection_from_payload

logger = structlog.get_logger(__name__)

_RESOURCE_BY_KIND: dict[ItemKind, str] = {
    ItemKind.LEAD: "leads",
    ItemKind.SERVICE_FILE: "service-files",
    ItemKind.TRAY: "trays",
}

_TRANSIENT_STATUS = frozenset({502, 503, 504})


class RestItemStore(ItemStore, PipelineDirectory, BoardMaintenance):
    """JSON API client for items, pipelines and maintenance sweeps.

    Args:
        base_url: API root, e.g. ``https://crm.example.com/api``.
        api_key: Bearer token sent with every request.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _item_path(kind: ItemKind | str, item_id: str) -> str:
        return f"/{_RESOURCE_BY_KIND[ItemKind(kind)]}/{item_id}"

    async def _request(
        self,
        method: str,
        path: str,
        allowed_status: frozenset[int] = frozenset(),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("rest_store.transport_error", method=method, path=path, error=str(exc))
            raise TransientRemoteError(f"{method} {path} failed: {exc}") from exc

        if response.status_code in _TRANSIENT_STATUS:
            raise TransientRemoteError(f"{method} {path} answered {response.status_code}")
        if response.is_error and response.status_code not in allowed_status:
            message, code = _error_details(response)
            logger.info(
                "rest_store.rejected",
                method=method,
                path=path,
                status=response.status_code,
                code=code,
            )
            raise rejection_from_payload(message, code)
        return response

    # ── PipelineDirectory ───────────────────────────────────────────────

    async def list_pipelines_with_stages(self) -> list[PipelineTopology]:
        response = await self._request("GET", "/pipelines", params={"include": "stages"})
        return list(topologies_adapter.validate_python(response.json()))

    # ── ItemStore ───────────────────────────────────────────────────────

    async def list_items(self, pipeline_id: str, viewer_id: str | None = None) -> list[BoardItem]:
        params = {"viewer_id": viewer_id} if viewer_id else None
        response = await self._request("GET", f"/pipelines/{pipeline_id}/items", params=params)
        items = list(board_items_adapter.validate_python(response.json()))
        logger.debug("rest_store.items_listed", pipeline_id=pipeline_id, count=len(items))
        return items

    async def get_item(self, kind: ItemKind, item_id: str, pipeline_id: str) -> BoardItem | None:
        response = await self._request(
            "GET",
            self._item_path(kind, item_id),
            allowed_status=frozenset({404}),
            params={"pipeline_id": pipeline_id},
        )
        if response.status_code in (204, 404) or not response.content:
            return None
        return board_item_adapter.validate_python(response.json())

    async def move_item(self, kind: ItemKind, item_id: str, pipeline_id: str, stage_id: str) -> None:
        await self._request(
            "POST",
            f"{self._item_path(kind, item_id)}/move",
            json={"pipeline_id": pipeline_id, "stage_id": stage_id},
        )
        logger.info("rest_store.item_moved", kind=ItemKind(kind).value, item_id=item_id, stage_id=stage_id)

    async def get_item_pipeline_id(self, kind: ItemKind, item_id: str) -> str | None:
        response = await self._request("GET", f"{self._item_path(kind, item_id)}/pipeline")
        return response.json().get("pipeline_id")

    async def get_item_tags(self, kind: ItemKind, item_id: str) -> tuple[Tag, ...]:
        response = await self._request("GET", f"{self._item_path(kind, item_id)}/tags")
        return tags_adapter.validate_python(response.json())

    async def release_dependents(self, kind: ItemKind, item_id: str) -> None:
        await self._request("POST", f"{self._item_path(kind, item_id)}/archive-and-release")

    async def get_tray_parent_id(self, tray_id: str) -> str | None:
        response = await self._request("GET", f"{self._item_path(ItemKind.TRAY, tray_id)}/parent")
        return response.json().get("service_file_id")

    # ── BoardMaintenance ────────────────────────────────────────────────

    async def expire_callbacks(self) -> None:
        await self._request("POST", "/leads/expire-callbacks")

    async def archive_completed_leads(self, lead_ids: Sequence[str]) -> int:
        if not lead_ids:
            return 0
        response = await self._request("POST", "/leads/archive-completed", json={"lead_ids": list(lead_ids)})
        return int(response.json().get("archived", 0))


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, code) from an error body.

    Accepts ``{"error": {"message", "code"}}``, ``{"message", "code"}`` and
    plain text bodies.
    """
    try:
        body = response.json()
    except ValueError:
        return (response.text or f"HTTP {response.status_code}"), None
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, str):
            return error, body.get("code")
        if isinstance(error, dict):
            message = error.get("message") or f"HTTP {response.status_code}"
            return str(message), error.get("code")
    return f"HTTP {response.status_code}", None
