"""External signals that gate whether a due schedule produces a task."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal
from xml.etree.ElementTree import Element

import httpx
from defusedxml import ElementTree
from pydantic import BaseModel, Field

from .config import settings

logger = logging.getLogger(__name__)

_PATH_TOKEN_RE = re.compile(r"\.|\[(\d+)\]")
_ATOM_NS = "{http://www.w3.org/2005/Atom}"


class TriggerSpec(BaseModel):
    """Feed polling (``rss``) or HTTP+JSON value extraction (``http-json``)."""

    type: Literal["rss", "http-json"]
    url: str
    path: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


@dataclass
class TriggerResult:
    changed: bool
    current_value: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class FeedEntry:
    id: str | None = None
    title: str | None = None
    link: str | None = None


def extract_by_path(obj: Any, path: str | None) -> str | None:
    """Dot/bracket path lookup: ``.tag_name``, ``.items[0].title``."""
    if not path:
        return obj if isinstance(obj, str) else json.dumps(obj)

    current = obj
    for token in (t for t in _PATH_TOKEN_RE.split(path.lstrip(".")) if t):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(token)
        elif isinstance(current, list) and token.isdigit():
            index = int(token)
            current = current[index] if index < len(current) else None
        else:
            return None
    if current is None:
        return None
    if isinstance(current, bool):
        return "true" if current else "false"
    if isinstance(current, (dict, list)):
        return json.dumps(current)
    return str(current)


def _text(element: Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def parse_feed(xml: str) -> FeedEntry:
    """First entry of an Atom feed, or first item of an RSS channel."""
    try:
        root = ElementTree.fromstring(xml)
    except ElementTree.ParseError:
        return FeedEntry()

    entry = root.find(f"{_ATOM_NS}entry")
    if entry is None:
        entry = root.find("entry")
    if entry is not None:
        ns = _ATOM_NS if entry.tag.startswith(_ATOM_NS) else ""
        link_el = entry.find(f"{ns}link")
        link = None
        if link_el is not None:
            link = link_el.get("href") or _text(link_el)
        return FeedEntry(id=_text(entry.find(f"{ns}id")), title=_text(entry.find(f"{ns}title")), link=link)

    item = root.find("channel/item")
    if item is None:
        item = root.find("item")
    if item is not None:
        return FeedEntry(
            id=_text(item.find("guid")),
            title=_text(item.find("title")),
            link=_text(item.find("link")),
        )
    return FeedEntry()


async def evaluate_trigger(
    trigger: TriggerSpec,
    last_value: str | None,
    *,
    client: httpx.AsyncClient | None = None,
) -> TriggerResult | None:
    """Fetch and compare. Any fetch or parse failure yields None ("no change")."""
    headers = {"User-Agent": settings.trigger_user_agent, **trigger.headers}
    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        response = await http.get(trigger.url, headers=headers, timeout=settings.trigger_fetch_timeout)
        if response.status_code >= 400:
            logger.info("Trigger fetch %s returned HTTP %s", trigger.url, response.status_code)
            return None

        if trigger.type == "rss":
            feed = parse_feed(response.text)
            current_value = feed.id or feed.title
            if not current_value:
                return None
            metadata = {}
            if feed.title:
                metadata["title"] = feed.title
            if feed.link:
                metadata["link"] = feed.link
            return TriggerResult(changed=current_value != last_value, current_value=current_value, metadata=metadata)

        current_value = extract_by_path(response.json(), trigger.path)
        if current_value is None:
            return None
        return TriggerResult(changed=current_value != last_value, current_value=current_value)
    except (httpx.HTTPError, ValueError) as exc:
        logger.info("Trigger fetch %s failed: %s", trigger.url, exc)
        return None
    finally:
        if owns_client:
            await http.aclose()
