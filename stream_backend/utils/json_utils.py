import json
import re
from typing import Any, Optional, Tuple


def repair_truncated_json(json_str: str) -> Tuple[str, Any]:
    """
    Try to repair a JSON document that was cut off mid-stream.
    Returns (repaired string, parsed object). On failure returns (json_str, None).

    Streamed tool payloads arrive as growing prefixes of one JSON object, e.g.
    '{"tool":"readFile","path":"sr' -> '{"tool":"readFile","path":"sr"}'.
    """
    if not json_str:
        return json_str, None

    try:
        data = json.loads(json_str)
        return json_str, data
    except json.JSONDecodeError:
        pass

    working_str = json_str.strip()

    # Close open strings and brackets, innermost first
    stack = []
    in_string = False
    escaped = False

    for char in working_str:
        if escaped:
            escaped = False
            continue
        if char == '\\':
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string:
            if char == '{':
                stack.append('}')
            elif char == '[':
                stack.append(']')
            elif char == '}':
                if stack and stack[-1] == '}':
                    stack.pop()
            elif char == ']':
                if stack and stack[-1] == ']':
                    stack.pop()

    repaired_str = working_str
    if escaped:
        # Dangling backslash cannot be completed meaningfully
        repaired_str = repaired_str[:-1]
    if in_string:
        repaired_str += '"'

    closers = "".join(reversed(stack))

    for candidate in (repaired_str, re.sub(r',\s*$', '', repaired_str), re.sub(r',?\s*"[^"]*"\s*:?\s*$', '', repaired_str)):
        try:
            data = json.loads(candidate + closers)
            return candidate + closers, data
        except json.JSONDecodeError:
            continue

    return json_str, None


def parse_json_object(text: str) -> Optional[dict]:
    """Best-effort parse of a (possibly truncated) JSON object. None unless a dict results."""
    _, data = repair_truncated_json(text)
    return data if isinstance(data, dict) else None
