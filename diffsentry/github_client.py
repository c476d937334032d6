"""GitHub REST API client with rate-limit handling."""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

from diffsentry.config import AI_REVIEW_MARKER, ConfigurationError
from diffsentry.schemas import ChangeEntry, ExistingComment

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
PER_PAGE = 100
MAX_RETRIES = 3
BACKOFF_FACTOR = 2.0
REQUEST_TIMEOUT = 10.0


class GitHubClientError(Exception):
    pass


class GitHubClient:
    """Pull-request side of the GitHub REST API, shaped like GitLabClient."""

    def __init__(self, token: str, marker: str = AI_REVIEW_MARKER, api_base: str = API_BASE) -> None:
        if not token:
            raise ConfigurationError(
                "GitHub token is required. Set GITHUB_TOKEN env var or config github_token."
            )
        self.api_base = api_base.rstrip("/")
        self.marker = marker
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    def _request(
        self, method: str, path: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> Any:
        url = f"{self.api_base}{path}" if path.startswith("/") else path
        for attempt in range(1, MAX_RETRIES + 1):
            resp = self.session.request(
                method, url, params=params, timeout=REQUEST_TIMEOUT, **kwargs
            )
            if resp.status_code in (200, 201):
                return resp.json()
            if resp.status_code == 403 and "rate limit" in resp.text.lower():
                reset_at = int(resp.headers.get("X-RateLimit-Reset", 0))
                wait = max(reset_at - int(time.time()), 0) + 1
                logger.warning("Rate limited. Sleeping %ds (attempt %d/%d)", wait, attempt, MAX_RETRIES)
                time.sleep(min(wait, 120))  # cap wait at 2 min
                continue
            if resp.status_code in (502, 503) and attempt < MAX_RETRIES:
                time.sleep(BACKOFF_FACTOR ** attempt)
                continue
            raise GitHubClientError(
                f"{method} {path} failed with HTTP {resp.status_code}: {resp.text[:200]}"
            )
        raise GitHubClientError(f"Request failed after {MAX_RETRIES} retries: {path}")

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    def _paginate(
        self, path: str, params: dict[str, Any] | None = None, max_items: int = 1000
    ) -> list[Any]:
        """Paginate through a GitHub list endpoint."""
        params = dict(params or {})
        params.setdefault("per_page", PER_PAGE)
        items: list[Any] = []
        page = 1
        while len(items) < max_items:
            params["page"] = page
            data = self._get(path, params=params)
            if not data:
                break
            items.extend(data)
            if len(data) < PER_PAGE:
                break
            page += 1
        return items[:max_items]

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    def get_merge_request(self, repo: str, number: int) -> dict[str, Any]:
        return self._get(f"/repos/{repo}/pulls/{number}")

    def fetch_change_set(
        self, repo: str, number: int, pr: dict[str, Any] | None = None
    ) -> list[ChangeEntry]:
        pr = pr or self.get_merge_request(repo, number)
        base_sha = (pr.get("base") or {}).get("sha", "")
        head_sha = (pr.get("head") or {}).get("sha", "")
        files = self._paginate(f"/repos/{repo}/pulls/{number}/files", max_items=3000)

        entries: list[ChangeEntry] = []
        for f in files:
            status = f.get("status")
            if status == "removed":
                continue
            patch = f.get("patch")
            if not patch:
                logger.debug("No patch for %s (binary or too large)", f.get("filename"))
                continue
            entries.append(ChangeEntry(
                new_path=f["filename"],
                old_path=None if status == "added" else f.get("previous_filename", f["filename"]),
                diff_text=patch,
                base_sha=base_sha,
                start_sha=base_sha,
                head_sha=head_sha,
                new_file=status == "added",
            ))
        logger.info("Fetched %d changed files for %s#%s", len(entries), repo, number)
        return entries

    def fetch_existing_comments(self, repo: str, number: int) -> list[ExistingComment]:
        comments: list[ExistingComment] = []
        for c in self._paginate(f"/repos/{repo}/pulls/{number}/comments", max_items=2000):
            line = c.get("line") or c.get("original_line")
            if not line:
                continue
            comments.append(ExistingComment(
                file_path=c.get("path") or "",
                line=line,
                start_line=c.get("start_line") or line,
                end_line=line,
                text=c.get("body") or "",
            ))
        for c in self._paginate(f"/repos/{repo}/issues/{number}/comments", max_items=1000):
            body = c.get("body") or ""
            if self.marker in body:
                comments.append(ExistingComment(text=body))
        logger.info("Parsed %d existing comments for %s#%s", len(comments), repo, number)
        return comments

    def fetch_project_prompt_override(self, repo: str, ref: str, path: str) -> str | None:
        """Get raw file content from the repo. Returns None if not found."""
        url = f"{self.api_base}/repos/{repo}/contents/{path}"
        resp = self.session.get(
            url,
            params={"ref": ref or "HEAD"},
            headers={"Accept": "application/vnd.github.raw+json"},
            timeout=REQUEST_TIMEOUT,
        )
        if resp.status_code == 200:
            return resp.text
        if resp.status_code == 404:
            return None
        raise GitHubClientError(f"Fetching {path}@{ref} failed with HTTP {resp.status_code}")

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_inline_comment(
        self, repo: str, number: int, entry: ChangeEntry, line: int, body: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{repo}/pulls/{number}/comments",
            json={
                "body": body,
                "commit_id": entry.head_sha,
                "path": entry.new_path,
                "line": line,
                "side": "RIGHT",
            },
        )

    def post_note(self, repo: str, number: int, body: str) -> dict[str, Any]:
        return self._request("POST", f"/repos/{repo}/issues/{number}/comments", json={"body": body})
