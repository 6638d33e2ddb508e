import json
from typing import Any
from urllib.parse import urlparse

import httpx

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.html_utilities import extract_title, html_to_text
from agent_turn_loop.tools.workspace import require_argument

_DEFAULT_MAX_CHARS = 50_000
_MAX_RESPONSE_BYTES = 2_000_000
_TIMEOUT_SECONDS = 30
_MAX_REDIRECTS = 5

_HEADERS = {
    "User-Agent": "agent-turn-loop/0.1",
    "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class WebFetchTool:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch a URL with HTTP GET and return it as readable text. "
            "HTML is converted to plain text with links preserved, JSON is pretty-printed."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "maxChars": {
                    "type": "number",
                    "description": "Maximum characters of content to return (default 50000)",
                },
            },
            "required": ["url"],
        }

    async def execute(self, arguments: dict[str, Any]) -> str:
        url = require_argument(arguments, "url")
        try:
            max_chars = int(arguments.get("maxChars", _DEFAULT_MAX_CHARS))
        except (TypeError, ValueError) as ex:
            raise ToolError(ToolError.INVALID_ARGUMENTS, "maxChars must be a number") from ex

        if urlparse(url).scheme not in ("http", "https"):
            raise ToolError(ToolError.INVALID_ARGUMENTS, "URL must use http or https scheme")

        try:
            async with httpx.AsyncClient(
                headers=_HEADERS,
                timeout=_TIMEOUT_SECONDS,
                follow_redirects=True,
                max_redirects=_MAX_REDIRECTS,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException as ex:
            raise ToolError(ToolError.TIMEOUT, f"Request timed out after {_TIMEOUT_SECONDS} seconds") from ex
        except httpx.TooManyRedirects as ex:
            raise ToolError(ToolError.EXECUTION, f"Too many redirects (max {_MAX_REDIRECTS})") from ex
        except httpx.HTTPError as ex:
            raise ToolError(ToolError.EXECUTION, str(ex)) from ex

        if response.status_code >= 400:
            raise ToolError(ToolError.EXECUTION, f"HTTP {response.status_code} fetching {url}")
        if len(response.content) > _MAX_RESPONSE_BYTES:
            raise ToolError(
                ToolError.EXECUTION,
                f"Response too large ({len(response.content):,} bytes, max {_MAX_RESPONSE_BYTES:,} bytes)",
            )

        content_type = response.headers.get("content-type", "")
        title = ""
        if "text/html" in content_type or "application/xhtml" in content_type:
            title = extract_title(response.text)
            content = html_to_text(response.text)
        elif "application/json" in content_type:
            try:
                content = json.dumps(response.json(), indent=2)
            except ValueError:
                content = response.text
        else:
            content = response.text

        original_length = len(content)
        truncated = original_length > max_chars
        if truncated:
            content = content[:max_chars]

        parts = [f"URL: {url}"]
        final_url = str(response.url)
        if final_url != url:
            parts.append(f"Final URL: {final_url}")
        parts.append(f"Status: {response.status_code}")
        parts.append(f"Content-Type: {content_type}")
        if title:
            parts.append(f"Title: {title}")
        if truncated:
            parts.append(f"Length: {max_chars:,} chars (truncated from {original_length:,})")
        else:
            parts.append(f"Length: {original_length:,} chars")
        parts.extend(["", "--- Content ---", "", content])
        return "\n".join(parts)
