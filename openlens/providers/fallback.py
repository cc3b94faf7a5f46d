"""
Prompt-based tool calling for backends without structured tool support.

The model is shown a textual tool catalog and asked to answer with a bare
JSON object such as ``{"tool": "find_on_page", "args": {"query": "price"}}``.
``parse_tool_call`` recovers that object from free text with a brace-depth
scanner; anything it cannot recover is treated as a plain answer.
"""

import json
from typing import Any, Dict, List, Optional

from openlens.providers.base import ToolCall

TOOL_CALL_MARKER = '{"tool"'
PAGE_CONTENT_HEADER = "Current page content:"


def find_object_end(text: str, start: int) -> Optional[int]:
    """
    Return the index just past the object that opens at ``start``.

    Tracks brace depth, ignoring braces inside JSON string literals.
    Returns None when the text ends before the depth returns to zero.
    """
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    return None


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Extract the first embedded tool-call object, or None for a plain answer."""
    if not text:
        return None
    start = text.find(TOOL_CALL_MARKER)
    if start == -1:
        return None
    end = find_object_end(text, start)
    if end is None:
        return None

    try:
        parsed = json.loads(text[start:end])
    except ValueError:
        return None
    if not isinstance(parsed, dict) or not parsed.get("tool"):
        return None

    args = parsed.get("args") or {}
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except ValueError:
            args = {}
    if not isinstance(args, dict):
        args = {}
    return ToolCall(name=str(parsed["tool"]), arguments=args)


def build_tool_catalog(tools: List[Dict[str, Any]]) -> str:
    """One line per tool: name, description and parameter properties."""
    lines = []
    for tool in tools:
        fn = tool.get("function", tool)
        params = fn.get("parameters", {}).get("properties", {})
        lines.append(f"- {fn['name']}: {fn.get('description', '')} (params: {json.dumps(params)})")
    return "\n".join(lines)


def tool_instructions(tools: List[Dict[str, Any]], has_page_content: bool) -> str:
    catalog = build_tool_catalog(tools)
    if has_page_content:
        return (
            "\n\nYou already have the page content above. Answer the user's question directly "
            "using that content. Do NOT call read_page.\n\n"
            "If you need OTHER tools, respond with ONLY a JSON object like:\n"
            '{"tool": "tool_name", "args": {"param": "value"}}\n\n'
            f"Available tools:\n{catalog}"
        )
    return (
        "\n\nYou have access to tools. To call a tool, respond with ONLY a JSON object like:\n"
        '{"tool": "tool_name", "args": {"param": "value"}}\n\n'
        "Do NOT ask the user for information. Call the appropriate tool instead.\n\n"
        f"Available tools:\n{catalog}\n\n"
        "If the user asks about the current page, call read_page first."
    )


def with_tool_catalog(messages: List[Dict[str, str]], tools: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Copy of ``messages`` with the tool catalog appended to the system message."""
    result = [dict(m) for m in messages]
    for msg in result:
        if msg["role"] == "system":
            msg["content"] += tool_instructions(tools, PAGE_CONTENT_HEADER in msg["content"])
            return result
    result.insert(0, {"role": "system", "content": tool_instructions(tools, False).lstrip()})
    return result
