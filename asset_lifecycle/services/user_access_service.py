from __future__ import annotations

import hashlib
import json
import threading
import time
import base64
import hmac
from pathlib import Path
from typing import Any
import os

from services.history_service import Actor


SESSION_TTL_SECONDS = 60 * 60 * 12
DEFAULT_ROLE = "Viewer"

RIGHT_FLAGS = ("moveAssets", "decideInspection", "replaceAssets", "registerAssets", "viewHistory")

RIGHTS_BY_ROLE = {
    "Admin": {
        "moveAssets": True,
        "decideInspection": True,
        "replaceAssets": True,
        "registerAssets": True,
        "viewHistory": True,
    },
    "Operator": {
        "moveAssets": True,
        "decideInspection": False,
        "replaceAssets": True,
        "registerAssets": False,
        "viewHistory": True,
    },
    "Inspector": {
        "moveAssets": False,
        "decideInspection": True,
        "replaceAssets": False,
        "registerAssets": False,
        "viewHistory": True,
    },
    "Viewer": {
        "moveAssets": False,
        "decideInspection": False,
        "replaceAssets": False,
        "registerAssets": False,
        "viewHistory": True,
    },
}

_BASE_DIR = Path(__file__).resolve().parent.parent
_DATA_DIR = Path(os.environ.get("ASSET_LIFECYCLE_DATA_DIR") or (_BASE_DIR / "data"))
_REVOKED_TOKENS_PATH = _DATA_DIR / "revoked_sessions.json"
_LOCK = threading.Lock()


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _ensure_data_dir() -> None:
    _DATA_DIR.mkdir(parents=True, exist_ok=True)


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in RIGHTS_BY_ROLE:
        return role
    return DEFAULT_ROLE


def normalize_rights(raw_rights: dict[str, Any] | None, role: str) -> dict[str, bool]:
    baseline = dict(RIGHTS_BY_ROLE.get(role, RIGHTS_BY_ROLE[DEFAULT_ROLE]))
    if not isinstance(raw_rights, dict):
        return baseline
    for key in list(baseline.keys()):
        if key in raw_rights:
            baseline[key] = bool(raw_rights.get(key))
    return baseline


def build_session_payload(
    employee_id: int | str,
    display_name: str | None = None,
    role: str | None = None,
    rights: dict[str, Any] | None = None,
) -> dict[str, Any]:
    normalized_role = normalize_role(role)
    return {
        "employeeID": str(employee_id).strip(),
        "displayName": (display_name or "").strip() or str(employee_id).strip(),
        "role": normalized_role,
        "rights": normalize_rights(rights, normalized_role),
    }


def has_right(session: dict[str, Any] | None, right: str) -> bool:
    if not session:
        return False
    rights = normalize_rights(session.get("rights"), normalize_role(session.get("role")))
    return bool(rights.get(right))


def actor_from_session(session: dict[str, Any] | None) -> Actor | None:
    if not session:
        return None
    employee_id = str(session.get("employeeID") or "").strip()
    if not employee_id:
        return None
    return Actor(id=employee_id, display_name=session.get("displayName") or None)


def _load_revoked_tokens_unlocked() -> dict[str, float]:
    _ensure_data_dir()
    if not _REVOKED_TOKENS_PATH.exists():
        return {}
    try:
        payload = json.loads(_REVOKED_TOKENS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    if not isinstance(payload, dict):
        return {}
    out: dict[str, float] = {}
    for token, expires_at in payload.items():
        try:
            out[str(token)] = float(expires_at)
        except (TypeError, ValueError):
            continue
    return out


def _save_revoked_tokens_unlocked(tokens: dict[str, float]) -> None:
    _ensure_data_dir()
    _REVOKED_TOKENS_PATH.write_text(json.dumps(tokens, ensure_ascii=True, indent=2), encoding="utf-8")


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def _decode_part(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


def create_session(payload: dict[str, Any]) -> str:
    expires_at = time.time() + SESSION_TTL_SECONDS
    session_payload = dict(payload)
    session_payload["expiresAt"] = expires_at
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    encoded_sig = base64.urlsafe_b64encode(_sign(encoded)).decode("ascii").rstrip("=")
    return f"{encoded}.{encoded_sig}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _decode_part(encoded_sig)):
            return None
        decoded_session = json.loads(_decode_part(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    if now >= expires_at:
        return None

    with _LOCK:
        revoked = _load_revoked_tokens_unlocked()
        changed = False
        for revoked_token, revoked_exp in list(revoked.items()):
            if now >= float(revoked_exp):
                revoked.pop(revoked_token, None)
                changed = True
        if token in revoked:
            if changed:
                _save_revoked_tokens_unlocked(revoked)
            return None
        if changed:
            _save_revoked_tokens_unlocked(revoked)

        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    with _LOCK:
        now = time.time()
        revoked = _load_revoked_tokens_unlocked()
        try:
            decoded = json.loads(_decode_part(token.split(".", 1)[0]).decode("utf-8"))
            expires_at = float(decoded.get("expiresAt") or 0.0)
        except (ValueError, UnicodeError, AttributeError, TypeError):
            expires_at = now + SESSION_TTL_SECONDS
        if expires_at <= now:
            return
        revoked[token] = expires_at
        _save_revoked_tokens_unlocked(revoked)
