"""GitLab REST API (v4) client for merge-request review."""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import quote

import requests

from diffsentry.config import AI_REVIEW_MARKER, ConfigurationError
from diffsentry.schemas import ChangeEntry, ExistingComment

logger = logging.getLogger(__name__)

PER_PAGE = 100
MAX_RETRIES = 3
BACKOFF_FACTOR = 2.0
REQUEST_TIMEOUT = 10.0
PAGE_DELAY = 0.1

# Markers that identify an earlier bot comment posted without a position
LEGACY_MARKERS = ("AI Review",)


class GitLabClientError(Exception):
    pass


def _project_path(project: str | int) -> str:
    return quote(str(project), safe="")


class GitLabClient:
    """Minimal GitLab client: merge requests, notes, discussions and raw files."""

    def __init__(self, url: str, token: str, marker: str = AI_REVIEW_MARKER) -> None:
        if not url:
            raise ConfigurationError("GitLab URL is required. Set GITLAB_URL or config gitlab_url.")
        if not token:
            raise ConfigurationError(
                "GitLab token is required. Set GITLAB_TOKEN (or BOT_TOKEN) or config gitlab_token."
            )
        self.api_base = url.rstrip("/") + "/api/v4"
        self.marker = marker
        self.session = requests.Session()
        self.session.headers.update({"PRIVATE-TOKEN": token})

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    def _request(
        self, method: str, path: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> requests.Response:
        url = f"{self.api_base}{path}"
        for attempt in range(1, MAX_RETRIES + 1):
            resp = self.session.request(
                method, url, params=params, timeout=REQUEST_TIMEOUT, **kwargs
            )
            if resp.status_code in (200, 201):
                return resp
            if resp.status_code == 429 and attempt < MAX_RETRIES:
                wait = int(resp.headers.get("Retry-After", BACKOFF_FACTOR ** attempt))
                logger.warning("Rate limited. Sleeping %ds (attempt %d/%d)", wait, attempt, MAX_RETRIES)
                time.sleep(min(wait, 60))
                continue
            if resp.status_code in (502, 503) and attempt < MAX_RETRIES:
                time.sleep(BACKOFF_FACTOR ** attempt)
                continue
            raise GitLabClientError(
                f"{method} {path} failed with HTTP {resp.status_code}: {resp.text[:200]}"
            )
        raise GitLabClientError(f"Request failed after {MAX_RETRIES} retries: {path}")

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params).json()

    def _paginate(self, path: str, max_items: int = 2000) -> list[Any]:
        items: list[Any] = []
        page = 1
        while len(items) < max_items:
            data = self._get(path, params={"page": page, "per_page": PER_PAGE})
            if not data:
                break
            items.extend(data)
            if len(data) < PER_PAGE:
                break
            page += 1
            time.sleep(PAGE_DELAY)
        return items[:max_items]

    # ------------------------------------------------------------------
    # Merge requests
    # ------------------------------------------------------------------

    def get_merge_request(self, project: str | int, iid: int) -> dict[str, Any]:
        return self._get(f"/projects/{_project_path(project)}/merge_requests/{iid}")

    def fetch_change_set(
        self, project: str | int, iid: int, mr: dict[str, Any] | None = None
    ) -> list[ChangeEntry]:
        """MR changes, each carrying the diff refs needed to anchor comments."""
        mr = mr or self.get_merge_request(project, iid)
        data = self._get(f"/projects/{_project_path(project)}/merge_requests/{iid}/changes")
        refs = data.get("diff_refs") or mr.get("diff_refs") or {}
        fallback_sha = mr.get("sha") or ""

        entries: list[ChangeEntry] = []
        for change in data.get("changes", []):
            if change.get("deleted_file"):
                continue
            entries.append(ChangeEntry(
                new_path=change.get("new_path") or "",
                old_path=None if change.get("new_file") else change.get("old_path"),
                diff_text=change.get("diff") or "",
                base_sha=refs.get("base_sha") or fallback_sha,
                start_sha=refs.get("start_sha") or fallback_sha,
                head_sha=refs.get("head_sha") or fallback_sha,
                new_file=bool(change.get("new_file")),
            ))
        logger.info("Fetched %d changed files for %s!%s", len(entries), project, iid)
        return entries

    def fetch_existing_comments(self, project: str | int, iid: int) -> list[ExistingComment]:
        notes = self._paginate(f"/projects/{_project_path(project)}/merge_requests/{iid}/notes")
        comments: list[ExistingComment] = []
        for note in notes:
            body = note.get("body") or ""
            position = note.get("position") or {}
            if position.get("new_line"):
                start, end = _line_range(position)
                comments.append(ExistingComment(
                    file_path=position.get("new_path") or "",
                    line=position["new_line"],
                    start_line=start,
                    end_line=end,
                    text=body,
                ))
            elif self.marker in body or any(m in body for m in LEGACY_MARKERS):
                comments.append(ExistingComment(text=body))
        logger.info("Parsed %d existing comments from %d notes", len(comments), len(notes))
        return comments

    def fetch_project_prompt_override(
        self, project: str | int, ref: str, path: str
    ) -> str | None:
        """Raw file from the repository at ``ref``; None when it does not exist."""
        url = (
            f"{self.api_base}/projects/{_project_path(project)}"
            f"/repository/files/{quote(path, safe='')}/raw"
        )
        resp = self.session.get(url, params={"ref": ref or "HEAD"}, timeout=REQUEST_TIMEOUT)
        if resp.status_code == 200:
            return resp.text
        if resp.status_code == 404:
            return None
        raise GitLabClientError(f"Fetching {path}@{ref} failed with HTTP {resp.status_code}")

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_inline_comment(
        self, project: str | int, iid: int, entry: ChangeEntry, line: int, body: str
    ) -> dict[str, Any]:
        position = {
            "base_sha": entry.base_sha,
            "start_sha": entry.start_sha,
            "head_sha": entry.head_sha,
            "position_type": "text",
            "old_path": entry.old_path or entry.new_path,
            "new_path": entry.new_path,
            "old_line": None,
            "new_line": line,
        }
        resp = self._request(
            "POST",
            f"/projects/{_project_path(project)}/merge_requests/{iid}/discussions",
            json={"body": body, "position": position},
        )
        return resp.json()

    def post_note(self, project: str | int, iid: int, body: str) -> dict[str, Any]:
        resp = self._request(
            "POST",
            f"/projects/{_project_path(project)}/merge_requests/{iid}/notes",
            json={"body": body},
        )
        return resp.json()


def _line_range(position: dict[str, Any]) -> tuple[int | None, int | None]:
    line_range = position.get("line_range") or {}
    start = (line_range.get("start") or {}).get("new_line")
    end = (line_range.get("end") or {}).get("new_line")
    if start and end:
        return start, end
    return position.get("new_line"), position.get("new_line")
