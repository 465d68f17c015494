import json
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx


def safe_float(x: Any) -> Optional[float]:
    try:
        if x is None or isinstance(x, bool):
            return None
        v = float(x)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(v) or math.isinf(v) else v


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def elapsed_ms(start: float) -> int:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return int(round((time.perf_counter() - start) * 1000))


def strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```"):
        lines = t.split("\n")[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        t = "\n".join(lines).strip()
    return t


def parse_json_strict(maybe: Any) -> Dict[str, Any]:
    """
    Parse an LLM response into a JSON object.

    Accepts code-fenced output and trailing-object salvage; anything that is
    not a JSON object raises ValueError (json.JSONDecodeError is a subclass).
    """
    if isinstance(maybe, dict):
        return maybe
    if isinstance(maybe, list):
        maybe = "".join(str(p) for p in maybe if p is not None)
    if maybe is None:
        raise ValueError("Empty LLM response (None)")
    if not isinstance(maybe, str):
        maybe = str(maybe)
    s = strip_code_fences(maybe)
    if not s:
        raise ValueError("Empty LLM response (blank)")
    try:
        data = json.loads(s)
    except json.JSONDecodeError:
        m = re.search(r"\{[\s\S]*\}\s*$", s)
        if not m:
            raise
        data = json.loads(m.group(0))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def safe_json(resp: httpx.Response) -> Any:
    """Decoded body of any JSON root, or None when the body is not JSON."""
    try:
        return resp.json()
    except ValueError:
        return None


def excerpt(text: Any, limit: int = 300) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[:limit] + "..."
