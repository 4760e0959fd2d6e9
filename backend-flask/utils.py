from __future__ import annotations

import base64
import binascii
import json
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

HTTP_STATUS_BY_CODE = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "LIMIT_EXCEEDED": 402,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "DUPLICATE_CANDIDATE": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
    "UPSTREAM": 502,
}

ROLES = ("ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status or HTTP_STATUS_BY_CODE.get(code, 400)


@dataclass
class AuthContext:
    valid: bool
    userId: str = ""
    email: str = ""
    role: str = ""
    organizationId: str = ""
    expiresAt: str = ""
    sessionHash: str = ""


def ok(data: Any, http_status: int = 200):
    return {"ok": True, "data": data}, http_status


def err(code: str, message: str, http_status: Optional[int] = None):
    status = http_status or HTTP_STATUS_BY_CODE.get(code, 400)
    return {"ok": False, "error": {"code": code, "message": message}}, status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_monotonic() -> float:
    return time.monotonic()


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "Body must be a JSON object")
    return body


def parse_json_list(raw: Any) -> list[Any]:
    try:
        s = str(raw or "").strip()
        if not s:
            return []
        obj = json.loads(s)
        return obj if isinstance(obj, list) else []
    except json.JSONDecodeError:
        return []


def parse_json_dict(raw: Any) -> dict[str, Any]:
    try:
        s = str(raw or "").strip()
        if not s:
            return {}
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else {}
    except json.JSONDecodeError:
        return {}


def safe_json_string(value: Any, fallback: str = "null") -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return fallback


_REDACT_KEYS = {"password", "token", "base64", "sessiontoken", "idtoken", "userdata"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "[REDACTED]"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


def normalize_role(role: Any) -> str:
    r = str(role or "").upper().strip()
    return r if r in ROLES else ""


def normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


def is_valid_email(email: Any) -> bool:
    return bool(EMAIL_RE.match(str(email or "").strip()))


def sanitize_filename(name: str) -> str:
    s = re.sub(r"[^a-zA-Z0-9.\-]", "_", str(name or "").strip())
    s = s.strip("._") or "file"
    return s[:80]


def decode_base64_to_bytes(raw: str) -> bytes:
    s = str(raw or "").strip()
    # Accept data URLs as sent by browsers.
    if s.startswith("data:") and "," in s:
        s = s.split(",", 1)[1]
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid base64 payload")


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def to_float_maybe(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(str(value).strip())
    except ValueError:
        return None
    if n != n:  # NaN
        return None
    return n


def to_int(value: Any, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return fallback


_RATE_RE = re.compile(r"^\s*(\d+)\s*(?:per|/)\s*(second|minute|hour|day)s?\s*$", re.IGNORECASE)
_PERIOD_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}


def parse_rate(spec: str) -> tuple[int, int]:
    m = _RATE_RE.match(str(spec or ""))
    if not m:
        raise ValueError(f"Invalid rate limit spec: {spec!r}")
    return int(m.group(1)), _PERIOD_SECONDS[m.group(2).lower()]


class SimpleRateLimiter:
    """Fixed-window in-memory limiter keyed by caller + bucket."""

    def __init__(self, max_keys: int = 10000) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}
        self._max_keys = max_keys

    def check(self, key: str, spec: str) -> int:
        limit, period = parse_rate(spec)
        now = now_monotonic()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= period:
                started, count = now, 0
            count += 1
            if len(self._windows) >= self._max_keys and key not in self._windows:
                self._evict(now)
            self._windows[key] = (started, count)
        if count > limit:
            raise ApiError("RATE_LIMITED", "Rate limit exceeded. Please try again later.")
        return limit - count

    def _evict(self, now: float) -> None:
        oldest = sorted(self._windows.items(), key=lambda kv: kv[1][0])
        for k, _ in oldest[: max(1, len(oldest) // 10)]:
            self._windows.pop(k, None)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
