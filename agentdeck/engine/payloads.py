"""Best-effort extraction from agent payloads.

Backends report session identifiers, token usage and rate limits in
many nested shapes and spellings. Everything here is tolerant: an
unrecognized shape yields ``None``, never an exception.
"""
from __future__ import annotations

import math
import re
import time
from typing import Any

from .models import SessionBinding

MAX_SEARCH_DEPTH = 8

# Values up to this many seconds are treated as "resets in N seconds".
RELATIVE_RESET_MAX_SECONDS = 5 * 24 * 3600
# Above this a reset timestamp is assumed to be epoch milliseconds.
EPOCH_SECONDS_MAX = 10_000_000_000

_SESSION_ID_KEYS = ("session_id", "sessionId", "thread_id", "threadId")
_CONVERSATION_ID_KEYS = ("conversation_id", "conversationId")

_USAGE_KEYS = ("usage", "token_usage", "tokenUsage")
_RATE_LIMIT_KEYS = ("rate_limits", "rateLimits", "rate_limits_raw", "rateLimitsRaw")
_RATE_LIMIT_CONTAINERS = ("usage", "meta", "info", "data", "result")

_USED_PERCENT_KEYS = ("used_percent", "usedPercent", "percent_used", "percentUsed")
_REMAINING_PERCENT_KEYS = (
    "remaining_percent", "remainingPercent", "percent_remaining",
    "percentRemaining", "left_percent", "leftPercent",
)
_USED_KEYS = ("used", "usedAmount", "current", "total_used", "tokens_used", "usedTokens")
_LIMIT_KEYS = (
    "limit", "limitAmount", "max", "max_tokens", "maxTokens", "capacity",
    "capacity_tokens", "capacityTokens", "total_limit", "totalLimit", "limitTokens",
)
_WINDOW_MINUTES_KEYS = ("window_minutes", "windowMinutes")
_WINDOW_LABEL_KEYS = ("window", "windowLabel", "window_label", "window_name")
_WINDOW_SECONDS_KEYS = ("limit_window_seconds", "window_seconds", "windowSeconds")
_RESET_AT_KEYS = ("resets_at", "resetsAt", "reset_at", "resetAt")
_RESET_IN_SECONDS_KEYS = ("reset_in", "resetsIn", "resetIn", "reset_after_seconds")
_RESET_IN_MS_KEYS = ("reset_in_ms", "resetInMs")

_WINDOW_FIELDS = frozenset(
    _USED_PERCENT_KEYS + _REMAINING_PERCENT_KEYS + _USED_KEYS + _LIMIT_KEYS
    + _WINDOW_MINUTES_KEYS + _WINDOW_LABEL_KEYS + _WINDOW_SECONDS_KEYS
    + _RESET_AT_KEYS + _RESET_IN_SECONDS_KEYS + _RESET_IN_MS_KEYS
)

_LABEL_RE = re.compile(
    r"^(\d+(?:\.\d+)?)\s*"
    r"(ms|s|sec|secs|seconds?|m|min|mins|minutes?|h|hr|hrs|hours?|d|days?|w|weeks?)$",
    re.IGNORECASE,
)


def _first(obj: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = obj.get(key)
        if value is not None:
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _non_empty_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


# ── Identifiers ──


def harvest_identifiers(event: Any, binding: SessionBinding) -> None:
    """Fill missing ids in *binding* from an event and its ``data`` object.

    The first non-empty value wins; ids already bound are never
    overwritten until the binding is reset.
    """
    if not isinstance(event, dict):
        return
    candidates = [event]
    data = _as_dict(event.get("data"))
    if data is not None:
        candidates.append(data)
    for candidate in candidates:
        if binding.session_id is None:
            binding.session_id = _non_empty_str(_first(candidate, _SESSION_ID_KEYS))
        if binding.conversation_id is None:
            binding.conversation_id = _non_empty_str(
                _first(candidate, _CONVERSATION_ID_KEYS)
            )


def harvest_response_identifiers(response: Any, binding: SessionBinding) -> None:
    """Fill missing ids from a tool-call result (meta blocks and content items)."""
    if not isinstance(response, dict):
        return
    for key in ("meta", "_meta", "structuredContent"):
        harvest_identifiers(_as_dict(response.get(key)), binding)
    harvest_identifiers(response, binding)
    content = response.get("content")
    if isinstance(content, list):
        for item in content:
            harvest_identifiers(item, binding)


# ── Usage ──


def _token_count_usage(node: dict[str, Any]) -> dict[str, Any] | None:
    info = _as_dict(node.get("info"))
    if info is None:
        return None
    source = _as_dict(info.get("total_token_usage")) or _as_dict(
        info.get("last_token_usage")
    )
    if source is None:
        return _as_dict(info.get("usage"))

    out = dict(source)
    context_window = normalize_numeric(
        node.get("model_context_window", info.get("model_context_window"))
    )
    if context_window is not None:
        window: dict[str, Any] = {"total_tokens": context_window}
        used = normalize_numeric(
            source.get("total_tokens", source.get("input_tokens"))
        )
        if used is not None:
            window["used_tokens"] = used
        out["context_window"] = window
    return out


def _usage_at(node: dict[str, Any]) -> dict[str, Any] | None:
    for key in _USAGE_KEYS:
        found = _as_dict(node.get(key))
        if found is not None:
            return found
    meta = _as_dict(node.get("meta"))
    if meta is not None:
        found = _as_dict(meta.get("usage")) or _as_dict(meta.get("usageDetails"))
        if found is not None:
            return found
    found = _token_count_usage(node)
    if found is not None:
        return found
    content = node.get("content")
    if isinstance(content, list):
        for item in content:
            if not isinstance(item, dict):
                continue
            found = (
                _as_dict(item.get("usage"))
                or _as_dict((_as_dict(item.get("metadata")) or {}).get("usage"))
                or _as_dict((_as_dict(item.get("meta")) or {}).get("usage"))
            )
            if found is not None:
                return found
    return None


def _search(node: Any, probe, depth: int, seen: set[int]) -> dict[str, Any] | None:
    if depth > MAX_SEARCH_DEPTH or not isinstance(node, (dict, list)):
        return None
    if id(node) in seen:
        return None
    seen.add(id(node))

    if isinstance(node, dict):
        found = probe(node)
        if found is not None:
            return found
        children = node.values()
    else:
        children = node
    for child in children:
        found = _search(child, probe, depth + 1, seen)
        if found is not None:
            return found
    return None


def extract_usage(payload: Any) -> dict[str, Any] | None:
    """Find a token-usage object anywhere in *payload*."""
    return _search(payload, _usage_at, 0, set())


# ── Rate limits ──


def _rate_limits_at(node: dict[str, Any]) -> dict[str, Any] | None:
    for key in _RATE_LIMIT_KEYS:
        found = _as_dict(node.get(key))
        if found is not None:
            return found
    for container in _RATE_LIMIT_CONTAINERS:
        inner = _as_dict(node.get(container))
        if inner is None:
            continue
        found = _as_dict(inner.get("rate_limits")) or _as_dict(inner.get("rateLimits"))
        if found is not None:
            return found
    return None


def extract_rate_limits(payload: Any) -> dict[str, Any] | None:
    """Find and normalize a rate-limit object anywhere in *payload*."""
    official = extract_official_rate_limits(payload)
    if official is not None:
        return official
    raw = _search(payload, _rate_limits_at, 0, set())
    if raw is None:
        return None
    return normalize_rate_limits(raw)


def normalize_numeric(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def normalize_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    if v in {"true", "1", "yes", "y", "on"}:
        return True
    if v in {"false", "0", "no", "n", "off"}:
        return False
    return None


def window_minutes_from_label(value: Any) -> int | None:
    """Parse ``"5h"``, ``"7d"``, ``"30 min"`` style labels into minutes."""
    if not isinstance(value, str):
        return None
    match = _LABEL_RE.match(value.strip())
    if not match:
        return None
    n = float(match.group(1))
    if n <= 0:
        return None
    unit = match.group(2).lower()
    if unit == "ms":
        return max(1, math.ceil(n / 60_000))
    if unit.startswith("s"):
        return max(1, math.ceil(n / 60))
    if unit.startswith("m"):
        return math.ceil(n)
    if unit.startswith("h"):
        return math.ceil(n * 60)
    if unit.startswith("d"):
        return math.ceil(n * 24 * 60)
    return math.ceil(n * 7 * 24 * 60)


def window_minutes_from_seconds(value: Any) -> int | None:
    seconds = normalize_numeric(value)
    if not seconds or seconds <= 0:
        return None
    return math.ceil(seconds / 60)


def normalize_reset_at(value: Any, now_ms: int | None = None) -> int | None:
    """Convert a reset timestamp to absolute epoch milliseconds.

    Values up to 5 days are seconds-from-now; values up to 1e10 are
    epoch seconds; anything larger is already epoch milliseconds.
    """
    raw = normalize_numeric(value)
    if raw is None or raw <= 0:
        return None
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if raw <= RELATIVE_RESET_MAX_SECONDS:
        return int(now_ms + raw * 1000)
    if raw <= EPOCH_SECONDS_MAX:
        return int(raw * 1000)
    return int(raw)


def normalize_rate_limit_window(
    raw: Any, now_ms: int | None = None,
) -> dict[str, Any] | None:
    """Normalize one rate-limit window.

    ``used_percent`` comes from the first of: an explicit used
    percentage, ``100 - remaining percentage``, or ``used / limit``
    clamped to 0..100. Returns None when none is present. Keys that are
    not window fields are preserved.
    """
    if not isinstance(raw, dict):
        return None

    used_percent = normalize_numeric(_first(raw, _USED_PERCENT_KEYS))
    if used_percent is None:
        remaining = normalize_numeric(_first(raw, _REMAINING_PERCENT_KEYS))
        if remaining is not None:
            used_percent = 100 - remaining
    if used_percent is None:
        used = normalize_numeric(_first(raw, _USED_KEYS))
        limit = normalize_numeric(_first(raw, _LIMIT_KEYS))
        if used is not None and limit is not None and limit > 0:
            used_percent = max(0.0, min(100.0, used / limit * 100))
            if float(used_percent).is_integer():
                used_percent = int(used_percent)
    if used_percent is None:
        return None

    window_minutes = normalize_numeric(_first(raw, _WINDOW_MINUTES_KEYS))
    if window_minutes is None:
        for key in _WINDOW_LABEL_KEYS:
            window_minutes = window_minutes_from_label(raw.get(key))
            if window_minutes is not None:
                break
    if window_minutes is None:
        for key in _WINDOW_SECONDS_KEYS:
            window_minutes = window_minutes_from_seconds(raw.get(key))
            if window_minutes is not None:
                break

    resets_at = normalize_reset_at(_first(raw, _RESET_AT_KEYS), now_ms)
    if resets_at is None:
        relative_s = normalize_numeric(_first(raw, _RESET_IN_SECONDS_KEYS))
        relative_ms = normalize_numeric(_first(raw, _RESET_IN_MS_KEYS))
        base = now_ms if now_ms is not None else int(time.time() * 1000)
        if relative_s is not None and relative_s >= 0:
            resets_at = int(base + relative_s * 1000)
        elif relative_ms is not None and relative_ms >= 0:
            resets_at = int(base + relative_ms)

    out = {k: v for k, v in raw.items() if k not in _WINDOW_FIELDS}
    out["used_percent"] = used_percent
    if window_minutes is not None:
        out["window_minutes"] = window_minutes
    if resets_at is not None:
        out["resets_at"] = resets_at
    return out


def normalize_rate_limit_credits(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    has_credits = normalize_boolean(raw.get("has_credits"))
    unlimited = normalize_boolean(raw.get("unlimited"))
    if has_credits is None or unlimited is None:
        return None
    out: dict[str, Any] = {"has_credits": has_credits, "unlimited": unlimited}
    if "balance" in raw:
        out["balance"] = raw["balance"]
    return out


def _is_bucket(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    return (
        isinstance(value.get("primary"), dict)
        or isinstance(value.get("secondary"), dict)
        or bool(_first(value, ("limit_id", "limitId", "limit_name", "limitName")))
    )


def _normalize_bucket(bucket: dict[str, Any], now_ms: int | None) -> dict[str, Any]:
    out = dict(bucket)
    for slot in ("primary", "secondary"):
        window = normalize_rate_limit_window(bucket.get(slot), now_ms)
        if window is not None:
            out[slot] = window
    credits = normalize_rate_limit_credits(bucket.get("credits"))
    if credits is not None:
        out["credits"] = credits
    return out


def normalize_rate_limits(
    raw: Any, now_ms: int | None = None,
) -> dict[str, Any] | None:
    """Normalize a rate-limit object of any supported shape.

    - a bucket (``primary``/``secondary``/``limit_id``) is wrapped as
      ``{limit_id: bucket}``
    - a map of buckets is normalized bucket by bucket
    - a bare window is normalized to ``{used_percent, ...}``
    - anything else is returned unchanged
    """
    if not isinstance(raw, dict):
        return None
    if _is_bucket(raw):
        limit_id = _non_empty_str(
            _first(raw, ("limit_id", "limitId", "limit_name", "limitName"))
        ) or "codex"
        return {limit_id.lower(): _normalize_bucket(raw, now_ms)}
    if any(_is_bucket(v) for v in raw.values()):
        return {
            key: _normalize_bucket(value, now_ms) if _is_bucket(value) else value
            for key, value in raw.items()
        }
    window = normalize_rate_limit_window(raw, now_ms)
    if window is not None:
        return window
    return dict(raw)


def extract_official_rate_limits(
    payload: Any, now_ms: int | None = None,
) -> dict[str, Any] | None:
    """Normalize a usage-endpoint payload (``rate_limit`` + ``additional_rate_limits``)."""
    if not isinstance(payload, dict):
        return None
    primary = _as_dict(payload.get("rate_limit")) or _as_dict(payload.get("rateLimit"))
    additional = payload.get("additional_rate_limits", payload.get("additionalRateLimits"))
    if primary is None and not isinstance(additional, list):
        return None

    def snapshot(limit_id: str, limit_name: str, rate_limit: dict[str, Any]) -> dict[str, Any]:
        snap: dict[str, Any] = {"limit_id": limit_id, "limit_name": limit_name}
        for slot in ("primary", "secondary"):
            window = normalize_rate_limit_window(
                rate_limit.get(f"{slot}_window", rate_limit.get(f"{slot}Window")),
                now_ms,
            )
            if window is not None:
                snap[slot] = window
        credits = normalize_rate_limit_credits(rate_limit.get("credits"))
        if credits is not None:
            snap["credits"] = credits
        return snap

    out: dict[str, Any] = {}
    if primary is not None:
        name = _non_empty_str(_first(payload, ("limit_name", "limitName"))) or "codex"
        out["codex"] = snapshot("codex", name, primary)
    if isinstance(additional, list):
        for item in additional:
            if not isinstance(item, dict):
                continue
            rate_limit = _as_dict(item.get("rate_limit")) or _as_dict(item.get("rateLimit"))
            if rate_limit is None:
                continue
            name = _non_empty_str(
                _first(item, ("limit_name", "metered_feature", "limitName"))
            ) or "codex"
            out[name] = snapshot(name.lower(), name, rate_limit)
    return out or None
