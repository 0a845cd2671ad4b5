"""Reduce tool handler results to plain, JSON-serializable data."""

import dataclasses
import html
import json
import re
from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

import httpx
from pydantic import BaseModel
from starlette.responses import JSONResponse, RedirectResponse, Response, StreamingResponse

from agentloop.tools.base import Transformable
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

_TAG = re.compile(r"<[^>]+>")
_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WHITESPACE = re.compile(r"\s+")

MAX_HTML_TEXT = 2000
MAX_RAW_TEXT = 1000


class ResultTransformer:
    """Converts arbitrary handler return values into primitives, mappings and lists."""

    def __init__(self, max_depth: int = 20):
        self.max_depth = max_depth

    def transform(self, value: Any) -> Any:
        """Reduce ``value`` to plain data.

        Args:
            value: Raw handler result

        Returns:
            A primitive, dict or list built only from plain data
        """
        return self._transform(value, depth=0)

    def _transform(self, value: Any, depth: int) -> Any:
        if depth > self.max_depth:
            return {"_notice": "Result nesting too deep", "_type": type(value).__name__}

        if value is None or isinstance(value, str | int | float | bool):
            return value

        if isinstance(value, Transformable):
            return self._transform(value.to_plain_data(), depth + 1)
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self._transform(dataclasses.asdict(value), depth + 1)
        if isinstance(value, Enum):
            return self._transform(value.value, depth + 1)
        if isinstance(value, datetime | date | time):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, UUID | PurePath):
            return str(value)
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")

        if isinstance(value, Response):
            return self._from_response(value)
        if isinstance(value, httpx.Response):
            return self._from_httpx_response(value)

        if isinstance(value, Mapping):
            return {str(key): self._transform(item, depth + 1) for key, item in value.items()}
        if isinstance(value, list | tuple | set | frozenset):
            return [self._transform(item, depth + 1) for item in value]

        logger.debug(f"No transformation for result of type {type(value).__name__}")
        return {"_notice": "Result could not be converted to plain data", "_type": type(value).__name__}

    def _from_response(self, response: Response) -> Any:
        if isinstance(response, RedirectResponse):
            location = response.headers.get("location", "")
            return {
                "success": response.status_code < 400,
                "message": f"Redirected to {location}" if location else "Redirected",
                "location": location,
            }
        if isinstance(response, StreamingResponse):
            return {"_notice": "Streaming responses cannot be returned to the model", "_type": "StreamingResponse"}

        body = bytes(response.body or b"").decode(response.charset, errors="replace")

        if isinstance(response, JSONResponse) or (response.media_type or "").endswith("json"):
            try:
                return json.loads(body)
            except json.JSONDecodeError:
                return body[:MAX_RAW_TEXT]

        if (response.media_type or "").startswith("text/html"):
            return html_to_text(body)[:MAX_HTML_TEXT]

        return body[:MAX_RAW_TEXT]

    def _from_httpx_response(self, response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except json.JSONDecodeError:
                pass
        if "html" in content_type:
            return html_to_text(response.text)[:MAX_HTML_TEXT]
        return response.text[:MAX_RAW_TEXT]


def html_to_text(markup: str) -> str:
    """Strip tags, scripts and styles, collapsing whitespace."""
    text = _BLOCK.sub(" ", markup)
    text = _TAG.sub(" ", text)
    return _WHITESPACE.sub(" ", html.unescape(text)).strip()
