"""RPC client for the reviewsync backend.

Learn: A thin httpx wrapper that speaks the backend's JSON API and maps
HTTP failures back onto the same exception classes the services raise:

    409 → ConflictError     422 → ValidationError
    404 → NotFoundError     403 → ForbiddenError
    timeout → RequestTimeoutError
    unreachable, 5xx → ServiceUnavailableError

There are no automatic retries. Retrying an approval whose response was
lost could apply it twice, so timeouts and transport failures go back
to the caller.
"""

from typing import Any, Optional

import httpx
import structlog

from reviewsync.config import settings
from reviewsync.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RequestTimeoutError,
    ReviewSyncError,
    ServiceUnavailableError,
    ValidationError,
)

logger = structlog.get_logger()

API_PREFIX = "/api/v1"

_STATUS_ERRORS = {
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    detail = body.get("detail") if isinstance(body, dict) else body
    if isinstance(detail, list):
        # FastAPI request validation errors
        return "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
    return str(detail)


class ReviewSyncApi:
    def __init__(
        self,
        user_id: str,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_id = str(user_id)
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.api_url).rstrip("/"),
            timeout=settings.request_timeout_seconds if timeout is None else timeout,
            transport=transport,
            headers={"X-User-Id": self.user_id},
        )

    async def __aenter__(self) -> "ReviewSyncApi":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ─── Transport ────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        mutation_id: Optional[str] = None,
    ) -> Any:
        headers = {"X-Mutation-Id": mutation_id} if mutation_id else None
        try:
            response = await self._client.request(
                method, API_PREFIX + path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning("rpc.timeout", method=method, path=path)
            raise RequestTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning("rpc.unreachable", method=method, path=path, error=repr(e))
            raise ServiceUnavailableError(f"{method} {path} failed: {e!r}") from e

        if response.status_code in _STATUS_ERRORS:
            raise _STATUS_ERRORS[response.status_code](_detail(response))
        if response.is_server_error:
            logger.warning("rpc.server_error", method=method, path=path, status=response.status_code)
            raise ServiceUnavailableError(_detail(response))
        if response.is_error:
            raise ReviewSyncError(_detail(response))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ─── Content and workflow ─────────────────────────────

    async def create_content_item(
        self, org_id, title: str, body: str = "", project_id=None
    ) -> dict:
        payload = {"org_id": str(org_id), "title": title, "body": body}
        if project_id is not None:
            payload["project_id"] = str(project_id)
        return await self._request("POST", "/content", json=payload)

    async def get_content_item(self, content_item_id) -> dict:
        return await self._request("GET", f"/content/{content_item_id}")

    async def list_versions(self, content_item_id) -> list[dict]:
        return await self._request("GET", f"/content/{content_item_id}/versions")

    async def create_version(
        self, content_item_id, body: str = "", compliance_score: Optional[float] = None,
        *, mutation_id: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/content/{content_item_id}/versions",
            json={"body": body, "compliance_score": compliance_score},
            mutation_id=mutation_id,
        )

    async def submit_version(
        self, content_item_id, version_id, reviewer_ids=(), *, mutation_id: Optional[str] = None
    ) -> dict:
        return await self._request(
            "POST",
            f"/content/{content_item_id}/versions/{version_id}/submit",
            json={"reviewer_ids": [str(r) for r in reviewer_ids]},
            mutation_id=mutation_id,
        )

    async def approve_version(
        self, content_item_id, version_id, feedback: Optional[str] = None,
        *, mutation_id: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/content/{content_item_id}/versions/{version_id}/approve",
            json={"feedback": feedback},
            mutation_id=mutation_id,
        )

    async def request_changes(
        self, content_item_id, version_id, feedback: Optional[str],
        *, mutation_id: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/content/{content_item_id}/versions/{version_id}/request-changes",
            json={"feedback": feedback},
            mutation_id=mutation_id,
        )

    async def list_approvals(self, content_item_id) -> list[dict]:
        return await self._request("GET", f"/content/{content_item_id}/approvals")

    async def latest_approval(self, content_item_id) -> Optional[dict]:
        return await self._request("GET", f"/content/{content_item_id}/approvals/latest")

    async def approval_stats(self, content_item_id) -> dict:
        return await self._request("GET", f"/content/{content_item_id}/approvals/stats")

    # ─── Notifications ────────────────────────────────────

    async def list_notifications(
        self, user_id, limit: Optional[int] = None, unread_only: bool = False
    ) -> list[dict]:
        params = {
            "limit": limit or settings.notification_list_limit,
            "unread_only": str(unread_only).lower(),
        }
        return await self._request("GET", f"/users/{user_id}/notifications", params=params)

    async def unread_count(self, user_id) -> int:
        data = await self._request("GET", f"/users/{user_id}/notifications/unread-count")
        return data["unread"]

    async def mark_read(self, notification_id, *, mutation_id: Optional[str] = None) -> dict:
        return await self._request(
            "POST", f"/notifications/{notification_id}/read", mutation_id=mutation_id
        )

    async def mark_all_read(self, user_id, *, mutation_id: Optional[str] = None) -> int:
        data = await self._request(
            "POST", f"/users/{user_id}/notifications/read-all", mutation_id=mutation_id
        )
        return data["updated"]

    # ─── Comments ─────────────────────────────────────────

    async def list_comments(self, content_item_id) -> list[dict]:
        return await self._request("GET", f"/content/{content_item_id}/comments")

    async def unresolved_count(self, content_item_id) -> int:
        data = await self._request(
            "GET", f"/content/{content_item_id}/comments/unresolved-count"
        )
        return data["unresolved"]

    async def add_comment(
        self, content_item_id, body: str, *, mutation_id: Optional[str] = None, **fields
    ) -> dict:
        payload = {"body": body, **{k: str(v) if k.endswith("_id") and v else v for k, v in fields.items()}}
        return await self._request(
            "POST", f"/content/{content_item_id}/comments", json=payload, mutation_id=mutation_id
        )

    async def update_comment(
        self, comment_id, body: str, *, mutation_id: Optional[str] = None
    ) -> dict:
        return await self._request(
            "PATCH", f"/comments/{comment_id}", json={"body": body}, mutation_id=mutation_id
        )

    async def resolve_comment(
        self, comment_id, resolved: bool = True, *, mutation_id: Optional[str] = None
    ) -> dict:
        action = "resolve" if resolved else "unresolve"
        return await self._request(
            "POST", f"/comments/{comment_id}/{action}", mutation_id=mutation_id
        )

    async def delete_comment(self, comment_id, *, mutation_id: Optional[str] = None) -> None:
        await self._request("DELETE", f"/comments/{comment_id}", mutation_id=mutation_id)
