"""MCP client posting JSON-RPC tool calls to the branch control plane."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol

import requests

logger = logging.getLogger(__name__)


class MCPError(RuntimeError):
    """Raised when an MCP call fails."""


class MCPNotFoundError(MCPError):
    """Raised when the control plane reports a missing branch or file (404)."""


class ControlPlaneClient(Protocol):
    """Operations the dispatch engine needs from the control plane."""

    def parallel_explore(
        self,
        project_name: str,
        parent_branch_id: str,
        prompts: List[str],
        agent: str,
        num_branches: int = 1,
    ) -> Dict[str, Any]:
        ...

    def get_branch(self, branch_id: str) -> Dict[str, Any]:
        ...

    def branch_read_file(self, branch_id: str, file_path: str) -> Dict[str, Any]:
        ...

    def branch_output(self, branch_id: str, full_output: bool = False) -> Dict[str, Any]:
        ...


def is_not_found_message(message: Any) -> bool:
    text = str(message).lower()
    return "404" in text or "not found" in text


class MCPClient:
    """Lightweight MCP client posting JSON-RPC to a single endpoint.

    Expects base_url to be the Streamable HTTP endpoint (e.g., http://localhost:8000/mcp/sse).
    Optional GET SSE stream is not used by this client.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[Any] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_wait: float = 1.0,
    ) -> None:
        self._session = session or requests.Session()
        self._rpc_url = (base_url or "http://localhost:8000/mcp/sse").rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_wait = retry_wait
        self._request_id = 0
        self._id_lock = threading.Lock()
        self._session_id = str(uuid.uuid4())

    @staticmethod
    def parse_sse_json(text: str) -> Dict[str, Any]:
        """Return the first JSON object from an SSE payload or raise."""
        normalized = text.replace("\r\n", "\n")

        events: List[List[str]] = []
        data_lines: List[str] = []
        for line in normalized.split("\n"):
            if line == "":
                if data_lines:
                    events.append(data_lines)
                    data_lines = []
                continue
            if line.startswith(":") or ":" not in line:
                continue
            name, value = line.split(":", 1)
            if name.strip() == "data":
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if data_lines:
            events.append(data_lines)

        for chunks in events:
            for chunk in chunks:
                candidate = chunk.strip()
                if candidate[:1] in ("{", "["):
                    try:
                        return json.loads(candidate)
                    except json.JSONDecodeError:
                        continue
            joined = "\n".join(chunks).strip()
            if joined[:1] in ("{", "["):
                try:
                    return json.loads(joined)
                except json.JSONDecodeError:
                    pass

        # Fallback: scan the raw payload for the first JSON object
        decoder = json.JSONDecoder()
        index = normalized.find("{")
        while index != -1:
            try:
                obj, _ = decoder.raw_decode(normalized[index:])
                return obj
            except json.JSONDecodeError:
                index = normalized.find("{", index + 1)

        logger.warning("Failed to parse SSE JSON. Raw response:\n%s", text)
        raise ValueError("No JSON data event in SSE response")

    def _rpc_post(self, body: Dict[str, Any], *, timeout: Optional[float] = None) -> requests.Response:
        headers = {
            # Streamable HTTP requires accepting both JSON responses and SSE
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
            "Mcp-Session-Id": self._session_id,
        }
        return self._session.post(self._rpc_url, json=body, headers=headers, timeout=timeout or self._timeout)

    def _decode(self, method: str, resp: requests.Response) -> Dict[str, Any]:
        if resp.status_code == 404:
            raise MCPNotFoundError(f"MCP {method} returned 404: {resp.text[:500]}")
        try:
            resp.raise_for_status()
        except requests.HTTPError:
            logger.error(
                "MCP HTTP error %s for %s (CT=%s): %r",
                resp.status_code,
                method,
                resp.headers.get("Content-Type", ""),
                resp.text[:500],
            )
            raise

        content_type = resp.headers.get("Content-Type", "")
        logger.debug("MCP response %s CT=%s", resp.status_code, content_type)
        if "text/event-stream" in content_type:
            body = self.parse_sse_json(resp.text)
        else:
            try:
                body = resp.json()
            except ValueError:
                logger.error(
                    "MCP response not JSON (status %s, CT=%s). First 1000 bytes: %r",
                    resp.status_code,
                    content_type,
                    resp.text[:1000],
                )
                raise

        if isinstance(body, dict) and "error" in body:
            if is_not_found_message(body["error"]):
                raise MCPNotFoundError(str(body["error"]))
            raise MCPError(str(body["error"]))
        if isinstance(body, dict) and "result" in body:
            result = body["result"]
            if isinstance(result, dict) and "structuredContent" in result:
                return result["structuredContent"]
            return result
        return body

    def _call(self, method: str, params: Dict[str, Any], *, timeout: Optional[float] = None) -> Dict[str, Any]:
        with self._id_lock:
            self._request_id += 1
            request_id = self._request_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        last_exception: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                logger.debug("MCP POST %s attempt %s to %s", method, attempt + 1, self._rpc_url)
                return self._decode(method, self._rpc_post(payload, timeout=timeout))
            except MCPNotFoundError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_exception = exc
                if attempt < self._max_retries - 1:
                    wait_time = self._retry_wait * 2**attempt
                    logger.warning(
                        "MCP call %s failed (attempt %s/%s): %s. Retrying in %ss...",
                        method,
                        attempt + 1,
                        self._max_retries,
                        exc,
                        wait_time,
                    )
                    time.sleep(wait_time)
                else:
                    logger.error("MCP call %s failed after retries: %s", method, exc)

        raise MCPError(str(last_exception or "Unknown MCP error")) from last_exception

    def call_tool(self, name: str, arguments: Dict[str, Any], *, timeout: Optional[float] = None) -> Dict[str, Any]:
        result = self._call("tools/call", {"name": name, "arguments": arguments}, timeout=timeout)
        if isinstance(result, dict) and result.get("isError"):
            message = _tool_error_text(result)
            if is_not_found_message(message):
                raise MCPNotFoundError(message)
            raise MCPError(message)
        return result

    def parallel_explore(
        self,
        project_name: str,
        parent_branch_id: str,
        prompts: List[str],
        agent: str,
        num_branches: int = 1,
    ) -> Dict[str, Any]:
        return self.call_tool(
            "parallel_explore",
            {
                "project_name": project_name,
                "parent_branch_id": parent_branch_id,
                "shared_prompt_sequence": prompts,
                "num_branches": num_branches,
                "agent": agent,
            },
        )

    def get_branch(self, branch_id: str) -> Dict[str, Any]:
        return self.call_tool("get_branch", {"branch_id": branch_id}, timeout=max(self._timeout, 300.0))

    def branch_read_file(self, branch_id: str, file_path: str) -> Dict[str, Any]:
        return self.call_tool("branch_read_file", {"branch_id": branch_id, "file_path": file_path})

    def branch_output(self, branch_id: str, full_output: bool = False) -> Dict[str, Any]:
        return self.call_tool(
            "branch_output",
            {"branch_id": branch_id, "full_output": full_output},
            timeout=max(self._timeout, 120.0),
        )


def _tool_error_text(result: Dict[str, Any]) -> str:
    parts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            parts.append(item["text"])
    if parts:
        return "\n".join(parts)
    return str(result.get("error") or result)
