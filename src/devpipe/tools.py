from __future__ import annotations

import asyncio
import json
import logging
import os
import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from .errors import ToolFailure
from .models import ToolResult

logger = logging.getLogger(__name__)

_GITHUB_API_URL = "https://api.github.com"
_HTTP_TIMEOUT_SECONDS = 30


class ToolAdapter(Protocol):
    async def invoke(self, capability: str, action: str, args: dict[str, Any]) -> ToolResult:
        """Perform one side effect.

        Raises:
            ToolFailure: "capability not connected" or "action failed".
        """
        ...


ActionHandler = Callable[[dict[str, Any]], Awaitable[ToolResult]]


class Capability:
    """A named group of actions, such as a filesystem or a code host."""

    name: str = ""

    def actions(self) -> dict[str, ActionHandler]:
        raise NotImplementedError

    async def call(self, action: str, args: dict[str, Any]) -> ToolResult:
        handler = self.actions().get(action)
        if handler is None:
            raise ToolFailure(self.name, action, detail=f"unknown action {self.name}.{action}")
        return await handler(args)


class CapabilityRegistry:
    """ToolAdapter over connected capabilities.

    Anything a capability raises while acting is surfaced as
    ``ToolFailure("action failed")`` so the engine can record it as a step
    failure.
    """

    def __init__(self, capabilities: list[Capability] | None = None) -> None:
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities or []:
            self.connect(capability)

    def connect(self, capability: Capability) -> None:
        if not capability.name:
            raise ValueError("capability name must be non-empty")
        self._capabilities[capability.name] = capability
        logger.info("Capability %s connected", capability.name)

    def disconnect(self, name: str) -> None:
        if self._capabilities.pop(name, None) is not None:
            logger.info("Capability %s disconnected", name)

    def status(self) -> dict[str, list[str]]:
        return {name: sorted(capability.actions()) for name, capability in self._capabilities.items()}

    def is_connected(self, name: str) -> bool:
        return name in self._capabilities

    async def invoke(self, capability: str, action: str, args: dict[str, Any]) -> ToolResult:
        target = self._capabilities.get(capability)
        if target is None:
            raise ToolFailure(capability, action, ToolFailure.NOT_CONNECTED)
        try:
            return await target.call(action, dict(args))
        except ToolFailure:
            raise
        except (OSError, ValueError, KeyError, TypeError, RuntimeError) as exc:
            logger.warning("Tool %s.%s failed: %s", capability, action, exc)
            raise ToolFailure(capability, action, ToolFailure.ACTION_FAILED, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class WorkspaceFilesystem(Capability):
    """File access confined to one workspace root."""

    name = "filesystem"

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def actions(self) -> dict[str, ActionHandler]:
        return {
            "read_file": self.read_file,
            "write_file": self.write_file,
            "list_directory": self.list_directory,
        }

    def _resolve(self, raw: Any) -> Path:
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError("path must be a non-empty string")
        candidate = (self.root / raw).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"path escapes workspace: {raw}")
        return candidate

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    async def read_file(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path"))
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return ToolResult(capability=self.name, action="read_file", output=content)

    async def write_file(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path"))
        content = args.get("content", "")
        if not isinstance(content, str):
            raise TypeError("content must be a string")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return ToolResult(
            capability=self.name,
            action="write_file",
            output=f"wrote {len(content)} characters",
            files_modified=[self._relative(path)],
        )

    async def list_directory(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path") or ".")
        entries = await asyncio.to_thread(lambda: sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir()))
        return ToolResult(capability=self.name, action="list_directory", output=entries)


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class GitError(RuntimeError):
    """Raised when a git command fails."""


class GitCapability(Capability):
    """Thin wrapper around the ``git`` executable for one repository."""

    name = "git"

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def actions(self) -> dict[str, ActionHandler]:
        return {
            "status": self.status,
            "diff": self.diff,
            "commit": self.commit,
            "create_branch": self.create_branch,
        }

    def _run(self, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=self.root,
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {completed.stderr.strip() or completed.stdout.strip()}")
        return completed.stdout

    async def status(self, args: dict[str, Any]) -> ToolResult:
        output = await asyncio.to_thread(self._run, "status", "--porcelain")
        return ToolResult(capability=self.name, action="status", output=output.splitlines())

    async def diff(self, args: dict[str, Any]) -> ToolResult:
        extra = ["--staged"] if args.get("staged") else []
        output = await asyncio.to_thread(self._run, "diff", *extra)
        return ToolResult(capability=self.name, action="diff", output=output)

    async def commit(self, args: dict[str, Any]) -> ToolResult:
        message = args.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValueError("commit message must be non-empty")
        paths = [str(p) for p in args.get("paths") or []]

        def _commit() -> tuple[list[str], str]:
            self._run("add", *(paths or ["-A"]))
            staged = self._run("diff", "--staged", "--name-only").splitlines()
            self._run("commit", "-m", message)
            return staged, self._run("rev-parse", "HEAD").strip()

        staged, sha = await asyncio.to_thread(_commit)
        return ToolResult(capability=self.name, action="commit", output={"sha": sha}, files_modified=staged)

    async def create_branch(self, args: dict[str, Any]) -> ToolResult:
        branch = args.get("name")
        if not isinstance(branch, str) or not branch.strip():
            raise ValueError("branch name must be non-empty")
        await asyncio.to_thread(self._run, "checkout", "-b", branch)
        return ToolResult(capability=self.name, action="create_branch", output={"branch": branch})


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


def _http_post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
) -> dict[str, Any]:
    """Send a JSON POST request and return the parsed JSON response.

    Raises:
        RuntimeError: If the HTTP request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT_SECONDS) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")[:500]
        logger.error("HTTP %d from %s: %s", exc.code, url, body)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise RuntimeError(f"Invalid JSON response from {url}") from exc


PostJson = Callable[[str, dict[str, Any], dict[str, str]], dict[str, Any]]


class GitHubCapability(Capability):
    """Pull requests and issues through the GitHub REST API."""

    name = "github"

    def __init__(
        self,
        repository: str,
        *,
        token: str | None = None,
        api_url: str = _GITHUB_API_URL,
        post_json: PostJson = _http_post_json,
    ) -> None:
        if repository.count("/") != 1:
            raise ValueError(f"repository must look like owner/name, got: {repository!r}")
        self.repository = repository
        self._token = token
        self.api_url = api_url.rstrip("/")
        self._post_json = post_json

    def actions(self) -> dict[str, ActionHandler]:
        return {
            "create_pull_request": self.create_pull_request,
            "create_issue": self.create_issue,
        }

    def _headers(self) -> dict[str, str]:
        token = self._token or os.getenv("GITHUB_TOKEN", "").strip()
        if not token:
            raise RuntimeError("GITHUB_TOKEN is required for the github capability")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        }

    @staticmethod
    def _require(args: dict[str, Any], *keys: str) -> None:
        missing = [key for key in keys if not args.get(key)]
        if missing:
            raise ValueError(f"missing required argument(s): {', '.join(missing)}")

    async def create_pull_request(self, args: dict[str, Any]) -> ToolResult:
        self._require(args, "title", "head", "base")
        payload = {
            "title": args["title"],
            "body": args.get("body", ""),
            "head": args["head"],
            "base": args["base"],
        }
        url = f"{self.api_url}/repos/{self.repository}/pulls"
        response = await asyncio.to_thread(self._post_json, url, payload, self._headers())
        return ToolResult(
            capability=self.name,
            action="create_pull_request",
            output={"number": response.get("number"), "url": response.get("html_url")},
        )

    async def create_issue(self, args: dict[str, Any]) -> ToolResult:
        self._require(args, "title")
        payload = {"title": args["title"], "body": args.get("body", ""), "labels": list(args.get("labels") or [])}
        url = f"{self.api_url}/repos/{self.repository}/issues"
        response = await asyncio.to_thread(self._post_json, url, payload, self._headers())
        return ToolResult(
            capability=self.name,
            action="create_issue",
            output={"number": response.get("number"), "url": response.get("html_url")},
        )
