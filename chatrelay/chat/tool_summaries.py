from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Tuple

ToolOutcome = Literal["ok", "empty", "error", "timeout", "unknown_tool"]


def _truncate(s: str, n: int) -> str:
    txt = (s or "").strip()
    if len(txt) <= n:
        return txt
    return txt[: max(0, n - 1)].rstrip() + "…"


def _jsonable(v: Any, *, _depth: int = 0, _max_depth: int = 6) -> Any:
    """
    Best-effort convert values to JSON-serializable objects.
    """
    if _depth >= _max_depth:
        return str(v)
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, datetime):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _jsonable(vv, _depth=_depth + 1, _max_depth=_max_depth) for k, vv in v.items()}
    if isinstance(v, (list, tuple, set)):
        return [_jsonable(x, _depth=_depth + 1, _max_depth=_max_depth) for x in list(v)]
    if hasattr(v, "model_dump"):
        try:
            return _jsonable(v.model_dump(mode="json"), _depth=_depth + 1, _max_depth=_max_depth)
        except Exception:
            pass
    return str(v)


def compact_args_for_log(args: Dict[str, Any], *, max_keys: int = 8, max_value_chars: int = 80) -> Dict[str, Any]:
    """
    Keep log lines small while still showing what was called.
    """
    if not isinstance(args, dict):
        return {}
    out: Dict[str, Any] = {}
    for i, (k, v) in enumerate(args.items()):
        if i >= max_keys:
            break
        vv = _jsonable(v)
        if isinstance(vv, str):
            vv = _truncate(vv, max_value_chars)
        out[str(k)] = vv
    return out


def error_result(message: str, *, outcome: ToolOutcome = "error") -> Dict[str, Any]:
    """Tool result in MCP shape for failures the model should see and recover from."""
    return {"content": [{"type": "text", "text": message}], "isError": True, "outcome": outcome}


def _text_of(result: Dict[str, Any]) -> str:
    parts = []
    for c in result.get("content") or []:
        if isinstance(c, dict) and c.get("type") == "text":
            parts.append(str(c.get("text") or ""))
    return " ".join(p for p in parts if p)


def summarize_tool_result(*, tool: str, result: Any) -> Tuple[ToolOutcome, str]:
    """
    Return (outcome, summary) for the tool_end event.
    """
    t = str(tool or "").strip()
    if not isinstance(result, dict):
        return "ok", _truncate(f"{t}: ok", 160)

    if result.get("isError"):
        outcome: ToolOutcome = result.get("outcome") or "error"  # type: ignore[assignment]
        detail = _text_of(result) or "unknown error"
        return outcome, _truncate(f"{t}: {outcome} ({detail})", 160)

    content = result.get("content") if isinstance(result.get("content"), list) else []
    if not content and result.get("structuredContent") is None:
        return "empty", _truncate(f"{t}: empty", 160)

    kinds = sorted({str(c.get("type")) for c in content if isinstance(c, dict) and c.get("type")})
    text = _text_of(result)
    parts = [f"{t}: ok ({len(content)} item{'s' if len(content) != 1 else ''}"]
    if kinds and kinds != ["text"]:
        parts[0] += f", {'/'.join(kinds)}"
    parts[0] += ")"
    if text:
        parts.append(_truncate(text, 100))
    return "ok", _truncate(" ".join(parts), 160)
