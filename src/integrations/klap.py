import logging
import os
import threading
from typing import Any, Dict, List, Optional

import requests

from clip_queue.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    InvalidPayloadError,
    PollCancelledError,
    RateLimitError,
    TransientApiError,
)
from poller.polling import ERROR, PROCESSING, READY, PollPolicy, TaskStatus, poll_until_complete

from .base import PollCallback, TaskAdapter

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.klap.app/v2"

TASK_POLICY = PollPolicy(
    interval=30.0, error_interval=60.0, rate_limit_wait=60.0, timeout=30 * 60.0
)
EXPORT_POLICY = PollPolicy(
    interval=15.0, error_interval=30.0, rate_limit_wait=60.0, timeout=5 * 60.0
)


class KlapClient(TaskAdapter):
    """
    Client for the Klap v2 task API (video → short clips).

    Payload:
        url (str): Required. Public URL of the source video.
        language (str): Optional, default "en".
        max_duration (int): Optional, seconds per clip, default 30.
        max_clip_count (int): Optional, default 10.
        export (bool): Optional. Export every clip before completing.
        watermark (str): Optional watermark image URL for exports.
    """

    name = "klap"
    poll_policy = TASK_POLICY

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        export_policy: PollPolicy = EXPORT_POLICY,
    ):
        self.api_key = api_key or os.getenv("KLAP_API_KEY")
        if not self.api_key:
            raise ConfigurationError("KLAP_API_KEY is not configured")

        self.base_url = (base_url or DEFAULT_API_URL).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
        )
        self.timeout = timeout
        self.export_policy = export_policy

    # ------------------------------------------------------------------
    # TaskAdapter
    # ------------------------------------------------------------------

    def validate_payload(self, payload: Dict[str, Any]) -> None:
        if not payload.get("url"):
            raise InvalidPayloadError("Payload missing required field: 'url'")

    def create_task(self, payload: Dict[str, Any]) -> str:
        self.validate_payload(payload)
        url = payload["url"]

        body = {
            "source_video_url": url,
            "language": payload.get("language", "en"),
            "max_duration": payload.get("max_duration", 30),
            "max_clip_count": payload.get("max_clip_count", 10),
            "editing_options": {"intro_title": False},
        }

        task = self._request("POST", "/tasks/video-to-shorts", json=body)
        if not task.get("id"):
            raise ApiError("Klap returned a task without an id")

        logger.info(f"Klap: task {task['id']} created for {url}")
        return task["id"]

    def get_task_status(self, task_id: str) -> TaskStatus:
        task = self._request("GET", f"/tasks/{task_id}")
        status = task.get("status")

        if status == READY:
            if not task.get("output_id"):
                return TaskStatus(ERROR, error="Task is ready but has no output_id", raw=task)
            return TaskStatus(READY, output_ref=task["output_id"], raw=task)

        if status in (ERROR, "failed"):
            return TaskStatus(ERROR, error=task.get("error") or "Unknown error", raw=task)

        return TaskStatus(PROCESSING, raw=task)

    def collect_result(
        self,
        status: TaskStatus,
        payload: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> Any:
        """
        Folder id plus the clips Klap generated in it.
        """
        folder_id = status.output_ref
        clips = self.get_clips(folder_id)
        if not clips:
            raise ApiError(f"Klap folder {folder_id} has no clips")

        result: Dict[str, Any] = {"folder_id": folder_id, "clips": clips}

        if payload.get("export"):
            clip_ids = [c if isinstance(c, str) else c.get("id") for c in clips]
            result["exports"] = self.export_clips(
                folder_id,
                [c for c in clip_ids if c],
                watermark=payload.get("watermark"),
                cancel=cancel,
                on_poll=on_poll,
            )
        return result

    # ------------------------------------------------------------------
    # Clips / exports
    # ------------------------------------------------------------------

    def get_clips(self, folder_id: str) -> List[Any]:
        return self._request("GET", f"/projects/{folder_id}")

    def get_clip(self, folder_id: str, clip_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/projects/{folder_id}/{clip_id}")

    def export_clips(
        self,
        folder_id: str,
        clip_ids: List[str],
        watermark: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> List[Dict[str, str]]:
        """
        Export clips one by one, polling each export until it has a URL.

        on_poll is called on every export poll, so callers can keep the job
        record fresh during a long export run.
        """
        exported = []

        for index, clip_id in enumerate(clip_ids, 1):
            if cancel is not None and cancel.is_set():
                raise PollCancelledError(
                    f"Klap export cancelled after {len(exported)}/{len(clip_ids)} clips"
                )
            logger.info(f"Klap: exporting clip {index}/{len(clip_ids)} ({clip_id})")

            body: Dict[str, Any] = {}
            if watermark:
                body["watermark"] = {"src_url": watermark}

            export = self._request(
                "POST", f"/projects/{folder_id}/{clip_id}/exports", json=body
            )
            export_id = export["id"]

            status = poll_until_complete(
                lambda: self._export_status(folder_id, clip_id, export_id),
                self.export_policy,
                cancel=cancel,
                on_poll=on_poll,
                label=f"klap export {export_id}",
            )
            exported.append({"clip_id": clip_id, "url": status.output_ref})

        logger.info(f"Klap: exported {len(exported)} clips")
        return exported

    def _export_status(self, folder_id: str, clip_id: str, export_id: str) -> TaskStatus:
        export = self._request(
            "GET", f"/projects/{folder_id}/{clip_id}/exports/{export_id}"
        )
        status = export.get("status")

        if status == READY and export.get("src_url"):
            return TaskStatus(READY, output_ref=export["src_url"], raw=export)
        if status == ERROR:
            return TaskStatus(ERROR, error=export.get("error") or "Unknown", raw=export)
        return TaskStatus(PROCESSING, raw=export)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"Klap: {method} {url}")

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientApiError(f"Klap API network error: {e}") from e

        if not response.ok:
            raise _error_for(response)

        return response.json()


def _error_for(response: requests.Response) -> ApiError:
    status = response.status_code
    try:
        body = response.json()
        detail = body.get("message") or body.get("error") or response.reason
    except (ValueError, AttributeError):
        detail = response.text or response.reason

    logger.error(f"Klap API request failed: {status} {detail}")

    if status in (401, 403):
        return AuthenticationError(
            "Klap API authentication failed. Please check your KLAP_API_KEY.", status
        )
    if status == 429:
        return RateLimitError("Klap API rate limit exceeded", status)
    if status >= 500:
        return TransientApiError(f"Klap API unavailable: {status} {detail}", status)
    return ApiError(f"Klap API error: {status} {detail}", status)
