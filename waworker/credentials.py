from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER = logging.getLogger("waworker.credentials")

_CREDS_FILE = "creds.json"
_SAFE_TENANT_RE = re.compile(r"[^A-Za-z0-9_.-]")
_PREFIX_LEN = 48
_DIGEST_LEN = 16


class CredentialStore:
    """Per-tenant auth state kept on disk so reconnects skip the QR step."""

    def __init__(self, sessions_dir: Path) -> None:
        self._sessions_dir = sessions_dir
        self._sessions_dir.mkdir(parents=True, exist_ok=True)

    def auth_dir(self, tenant_id: str) -> Path:
        # Readable prefix for operators, digest of the raw id for uniqueness.
        raw = str(tenant_id)
        prefix = _SAFE_TENANT_RE.sub("_", raw).strip(".")[:_PREFIX_LEN] or "tenant"
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_DIGEST_LEN]
        path = self._sessions_dir / f"{prefix}-{digest}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def load(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        path = self.auth_dir(tenant_id) / _CREDS_FILE
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "event=creds_load_failed tenant_id=%s path=%s error=%s",
                tenant_id,
                path,
                exc,
            )
            return None
        return data if isinstance(data, dict) else None

    def save(self, tenant_id: str, state: Dict[str, Any]) -> None:
        path = self.auth_dir(tenant_id) / _CREDS_FILE
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state), encoding="utf-8")
        os.replace(tmp_path, path)
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            LOGGER.warning(
                "event=creds_chmod_failed tenant_id=%s path=%s error=%s",
                tenant_id,
                path,
                exc,
            )

    def remove(self, tenant_id: str) -> bool:
        path = self.auth_dir(tenant_id) / _CREDS_FILE
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


__all__ = ["CredentialStore"]
