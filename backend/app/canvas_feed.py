"""Read-only client for the upstream Canvas coursework feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .config import Settings
from .errors import StudyFlowError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class CanvasFeedError(StudyFlowError):
    """The feed could not be read for a student."""


@dataclass
class FeedBatch:
    student_id: str
    # ExternalAssignment payloads; the reconciler validates and reports bad rows.
    records: List[Dict[str, Any]] = field(default_factory=list)
    failed_courses: List[str] = field(default_factory=list)


class CanvasFeedClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url.startswith(("http://", "https://")):
            base_url = f"https://{base_url}"
        self.api_root = f"{base_url.rstrip('/')}/api/v1"
        self._token = token
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None

    @classmethod
    def for_student(
        cls, settings: Settings, student_id: str, *, client: Optional[httpx.Client] = None
    ) -> "CanvasFeedClient":
        token = settings.canvas_tokens.get(student_id)
        if not settings.canvas_base_url or not token:
            raise CanvasFeedError(f"Canvas is not configured for student '{student_id}'.")
        return cls(
            settings.canvas_base_url,
            token,
            timeout_seconds=settings.canvas_timeout_seconds,
            client=client,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "CanvasFeedClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def list_courses(self) -> List[Dict[str, Any]]:
        return list(self._paginate("/courses", {"enrollment_state": "active", "per_page": PAGE_SIZE}))

    def list_assignments(self, course_id: str) -> List[Dict[str, Any]]:
        params = {"per_page": PAGE_SIZE, "order_by": "due_at"}
        return list(self._paginate(f"/courses/{course_id}/assignments", params))

    def fetch_assignments(self, student_id: str) -> FeedBatch:
        """Pull every active course's assignments as ``ExternalAssignment`` payloads.

        A course that fails to load is logged and listed in ``failed_courses``;
        the remaining courses still come back.
        """
        batch = FeedBatch(student_id=student_id)
        for course in self.list_courses():
            course_id = str(course.get("id", ""))
            course_name = course.get("name") or course.get("course_code")
            try:
                rows = self.list_assignments(course_id)
            except CanvasFeedError as exc:
                logger.warning("Canvas course %s (%s) failed for student=%s: %s", course_id, course_name, student_id, exc)
                batch.failed_courses.append(course_id)
                continue
            for row in rows:
                batch.records.append(
                    {
                        "student_id": student_id,
                        "title": row.get("name"),
                        "course": course_name,
                        "due_at": row.get("due_at"),
                        "source_id": row.get("id"),
                        "source_course_id": row.get("course_id", course_id),
                        "instructions": row.get("description"),
                    }
                )
        logger.info(
            "Fetched %d Canvas assignments for student=%s (%d courses failed)",
            len(batch.records),
            student_id,
            len(batch.failed_courses),
        )
        return batch

    def _paginate(self, path: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = f"{self.api_root}{path}"
        query: Optional[Dict[str, Any]] = params
        headers = {"Authorization": f"Bearer {self._token}"}
        while url:
            try:
                response = self._client.get(url, params=query, headers=headers)
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPError as exc:
                raise CanvasFeedError(f"Canvas request to {path} failed: {exc}") from exc
            except ValueError as exc:
                raise CanvasFeedError(f"Canvas returned invalid JSON for {path}: {exc}") from exc
            if not isinstance(payload, list):
                raise CanvasFeedError(f"Canvas returned {type(payload).__name__} for {path}, expected a list.")
            yield from payload
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string.
            query = None


__all__ = ["CanvasFeedClient", "CanvasFeedError", "FeedBatch"]
