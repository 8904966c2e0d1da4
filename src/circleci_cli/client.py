"""CircleCI API client."""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

_QUERY_LIMIT = 100


class CircleCIError(Exception):
    """API error with code and message."""

    def __init__(self, code: str, message: str, status_code: int = 0):
        self.code = code
        self.message = message
        self.status_code = status_code
        if status_code:
            super().__init__(f"{status_code}: {message}")
        else:
            super().__init__(message)


class CircleCIClient:
    """Thin wrapper around the CircleCI v1.1 REST API."""

    def __init__(
        self,
        token: str | None = None,
        host: str = "https://circleci.com",
        vcs_type: str = "github",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token = token or None
        self.host = host.rstrip("/")
        self.vcs_type = vcs_type
        self.base_url = f"{self.host}/api/v1.1/"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _auth_params(self) -> dict:
        return {"circle-token": self.token} if self.token else {}

    def _request(self, method: str, path: str, *, params: dict | None = None, body: dict | None = None, auth: bool = True):
        """Make a request, return parsed JSON data (or None for an empty body)."""
        # Strip None params
        query = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug("%s %s params=%s", method, path, query)
        if auth:
            query.update(self._auth_params())

        try:
            resp = self._client.request(method, path, params=query or None, json=body)
        except httpx.TimeoutException as exc:
            raise CircleCIError("TIMEOUT", "Request timed out", 0) from exc
        except httpx.RequestError as exc:
            raise CircleCIError("NETWORK", str(exc), 0) from exc

        logger.debug("%s %s -> %d (%d bytes)", method, path, resp.status_code, len(resp.content))

        if resp.status_code >= 400:
            message = resp.text.strip() or resp.reason_phrase
            try:
                data = resp.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("message"):
                message = data["message"]
            raise CircleCIError("HTTP", message, resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise CircleCIError("INVALID_RESPONSE", resp.text[:200], resp.status_code)

    def _project_path(self, account: str, repo: str, *suffix) -> str:
        parts = ["project", self.vcs_type, quote(account, safe=""), quote(repo, safe="")]
        parts.extend(quote(str(p), safe="") for p in suffix)
        return "/".join(parts)

    def _recent_builds(self, path: str, params: dict, limit: int, offset: int) -> list[dict]:
        """Page through a build listing, at most _QUERY_LIMIT builds per call.

        A limit of -1 keeps paging until the server returns a short page.
        """
        builds: list[dict] = []
        offset = max(offset, 0)
        while limit != 0:
            page_size = _QUERY_LIMIT if limit < 0 else min(limit, _QUERY_LIMIT)
            page = self._request("GET", path, params={**params, "limit": page_size, "offset": offset}) or []
            builds.extend(page)
            offset += len(page)
            if limit > 0:
                limit -= len(page)
            if len(page) < page_size:
                break
        return builds

    def list_projects(self) -> list[dict]:
        return self._request("GET", "projects") or []

    def get_project(self, account: str, repo: str) -> dict:
        for project in self.list_projects():
            if project.get("username") == account and project.get("reponame") == repo:
                return project
        raise CircleCIError("NOT_FOUND", f"project {account}/{repo} not found", 0)

    def list_recent_builds(self, limit: int = 30, offset: int = 0) -> list[dict]:
        return self._recent_builds("recent-builds", {}, limit, offset)

    def list_recent_builds_for_project(
        self,
        account: str,
        repo: str,
        branch: str | None = None,
        status: str | None = None,
        limit: int = 30,
        offset: int = 0,
    ) -> list[dict]:
        if branch:
            path = self._project_path(account, repo, "tree", branch)
        else:
            path = self._project_path(account, repo)
        return self._recent_builds(path, {"filter": status or None}, limit, offset)

    def get_build(self, account: str, repo: str, build_num: int) -> dict:
        return self._request("GET", self._project_path(account, repo, build_num))

    def get_action_outputs(self, action: dict) -> list[dict]:
        # Output URLs are pre-signed.
        return self._request("GET", action["output_url"], auth=False) or []

    def list_build_artifacts(self, account: str, repo: str, build_num: int) -> list[dict]:
        return self._request("GET", self._project_path(account, repo, build_num, "artifacts")) or []

    def list_test_metadata(self, account: str, repo: str, build_num: int) -> list[dict]:
        data = self._request("GET", self._project_path(account, repo, build_num, "tests")) or {}
        return data.get("tests") or []

    def retry_build(self, account: str, repo: str, build_num: int) -> dict:
        return self._request("POST", self._project_path(account, repo, build_num, "retry"))

    def cancel_build(self, account: str, repo: str, build_num: int) -> dict:
        return self._request("POST", self._project_path(account, repo, build_num, "cancel"))

    def build(self, account: str, repo: str, branch: str) -> dict:
        return self._request("POST", self._project_path(account, repo, "tree", branch))

    def clear_cache(self, account: str, repo: str) -> str:
        data = self._request("DELETE", self._project_path(account, repo, "build-cache")) or {}
        return data.get("status", "")

    def add_env_var(self, account: str, repo: str, name: str, value: str) -> dict:
        return self._request(
            "POST",
            self._project_path(account, repo, "envvar"),
            body={"name": name, "value": value},
        )

    def list_env_vars(self, account: str, repo: str) -> list[dict]:
        return self._request("GET", self._project_path(account, repo, "envvar")) or []

    def delete_env_var(self, account: str, repo: str, name: str) -> None:
        self._request("DELETE", self._project_path(account, repo, "envvar", name))

    def add_ssh_key(self, account: str, repo: str, hostname: str, private_key: str) -> None:
        self._request(
            "POST",
            self._project_path(account, repo, "ssh-key"),
            body={"hostname": hostname, "private_key": private_key},
        )

    def download(self, url: str, destination: str | Path) -> None:
        """Stream ``url`` into ``destination``, creating parent directories."""
        destination = Path(destination)
        logger.debug("GET %s -> %s", url, destination)
        try:
            with self._client.stream("GET", url, params=self._auth_params() or None) as resp:
                if resp.status_code != 200:
                    raise CircleCIError("DOWNLOAD", f"bad status: {resp.status_code} {resp.reason_phrase}", 0)
                destination.parent.mkdir(parents=True, exist_ok=True)
                with open(destination, "wb") as fh:
                    for chunk in resp.iter_bytes():
                        fh.write(chunk)
        except httpx.TimeoutException as exc:
            raise CircleCIError("TIMEOUT", f"Download of {url} timed out", 0) from exc
        except httpx.RequestError as exc:
            raise CircleCIError("NETWORK", str(exc), 0) from exc
        except OSError as exc:
            raise CircleCIError("DOWNLOAD", f"unable to write {destination}: {exc}", 0) from exc

    def close(self):
        self._client.close()
