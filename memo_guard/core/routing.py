"""
Message normalisation and model routing for the AI proxy.

Model choice is a cost/quality trade-off only: the cheap model unless the
conversation looks like a harder task. An explicit model always wins.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from memo_guard.config.loader import ProviderConfig

AUTO_MODEL = "auto"
DEFAULT_FUNCTION_TYPE = "conversation"

# Function types that are always served by the cheap model, without search
CHEAP_FUNCTION_TYPES = frozenset({"persona", "analysis", "questionnaire"})

LONG_MESSAGE_COUNT = 8
LONG_USER_MESSAGE_CHARS = 120

TECHNICAL_PATTERN = re.compile(
    r"```|stack|trace|bug|error|kotlin|swift|typescript|sql"
    r"|方案|设计|实现|步骤|对比|分析|权衡",
    re.IGNORECASE
)
MULTI_CONSTRAINT_PATTERN = re.compile(
    r"(必须|要求|至少|不少于|不要|改成|实现|支持).{0,20}(并且|同时|另外)"
)
FRESHNESS_PATTERN = re.compile(
    r"今天|最新|实时|价格|汇率|天气|新闻|发布|版本"
    r"|what('?s)? new|latest|today|price|rate|weather|stock",
    re.IGNORECASE
)


@dataclass(frozen=True)
class Route:
    """Where a completion request goes upstream."""
    selected_model: str
    upstream_model: str
    enable_search: bool
    function_type: str


def normalize_messages(raw_messages: Any) -> List[Dict[str, str]]:
    """Normalise chat messages before estimation and forwarding.

    Non-dict entries are dropped, roles are lower-cased, contents coerced to
    strings, and every system message is merged into one leading message.
    """
    if not isinstance(raw_messages, list):
        return []

    normalized = []
    for message in raw_messages:
        if not isinstance(message, dict):
            continue
        item = dict(message)
        item["role"] = str(message.get("role") or "").lower()
        content = message.get("content")
        item["content"] = "" if content is None else str(content)
        normalized.append(item)

    system_parts = [m["content"] for m in normalized if m["role"] == "system"]
    others = [m for m in normalized if m["role"] != "system"]

    merged = "\n\n".join(part for part in system_parts if part.strip()).strip()
    if not merged:
        return others
    return [{"role": "system", "content": merged}] + others


def last_user_content(messages: List[Dict[str, str]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message.get("content") or ""
    return ""


def is_high_quality(messages: List[Dict[str, str]]) -> bool:
    """Whether the conversation looks hard enough for the strong model."""
    if len(messages) >= LONG_MESSAGE_COUNT:
        return True
    content = last_user_content(messages)
    if len(content) >= LONG_USER_MESSAGE_CHARS:
        return True
    if TECHNICAL_PATTERN.search(content):
        return True
    return bool(MULTI_CONSTRAINT_PATTERN.search(content))


def should_enable_search(
    messages: List[Dict[str, str]],
    function_type: str,
    requested: Optional[bool] = None
) -> bool:
    if isinstance(requested, bool):
        return requested
    if function_type in CHEAP_FUNCTION_TYPES:
        return False
    return bool(FRESHNESS_PATTERN.search(last_user_content(messages)))


def select_route(
    messages: List[Dict[str, str]],
    provider: ProviderConfig,
    requested_model: Optional[str] = None,
    function_type: Optional[str] = None,
    enable_search: Optional[bool] = None
) -> Route:
    """Pick the model, and whether web search is on, for a request.

    Args:
        messages: Normalised messages
        provider: Provider configuration naming the cheap/strong/search models
        requested_model: Caller's model; empty or "auto" means choose
        function_type: Caller's function type, default "conversation"
        enable_search: Caller's explicit search flag, if any

    Returns:
        Route with the selected and the upstream model
    """
    function_type = function_type or DEFAULT_FUNCTION_TYPE
    if requested_model and requested_model != AUTO_MODEL:
        selected = requested_model
    elif function_type in CHEAP_FUNCTION_TYPES:
        selected = provider.cheap_model
    elif is_high_quality(messages):
        selected = provider.strong_model
    else:
        selected = provider.cheap_model

    search = should_enable_search(messages, function_type, enable_search)
    upstream = selected
    if search and not selected.startswith(provider.search_model):
        upstream = provider.search_model

    return Route(
        selected_model=selected,
        upstream_model=upstream,
        enable_search=search,
        function_type=function_type
    )
