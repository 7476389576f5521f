from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .security import parse_allowed_origins


# Origins allowed to read responses cross-origin.
# Override with env var DOCLOCK_ALLOWED_ORIGINS (comma-separated).
ALLOWED_ORIGINS = parse_allowed_origins(
    os.environ.get("DOCLOCK_ALLOWED_ORIGINS", "https://docjoiner.com,https://www.docjoiner.com")
)

# Upload limits.
MAX_UPLOAD_BYTES = int(os.environ.get("DOCLOCK_MAX_UPLOAD_BYTES", str(60 * 1024 * 1024)))  # 60MB
MAX_FIELD_BYTES = int(os.environ.get("DOCLOCK_MAX_FIELD_BYTES", str(1024 * 1024)))  # 1MB

# qpdf command prefix; split like argv, never handed to a shell.
QPDF_COMMAND = tuple(shlex.split(os.environ.get("DOCLOCK_QPDF_COMMAND", "qpdf")))

# Bounded wait for qpdf. 0 disables the timeout.
QPDF_TIMEOUT_SECONDS = float(os.environ.get("DOCLOCK_QPDF_TIMEOUT_SECONDS", "120"))

# Root directory for per-request workspaces.
# Default: the OS temp dir. Override with env var DOCLOCK_WORKSPACES_ROOT.
_root_raw = os.environ.get("DOCLOCK_WORKSPACES_ROOT")
if _root_raw and _root_raw.strip():
    WORKSPACES_ROOT: Optional[Path] = Path(_root_raw).resolve()
else:
    WORKSPACES_ROOT = None

# Workspaces older than this are leftovers from a crashed process.
STALE_WORKSPACE_SECONDS = float(os.environ.get("DOCLOCK_STALE_WORKSPACE_SECONDS", "3600"))

HOST = os.environ.get("DOCLOCK_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("DOCLOCK_LOG_LEVEL", "INFO").upper()

PROTECT_PREFIX = "dj-protect-"
UNLOCK_PREFIX = "dj-unlock-"
WORKSPACE_PREFIXES = (PROTECT_PREFIX, UNLOCK_PREFIX)

INPUT_FILENAME = "input.pdf"
OUTPUT_FILENAME = "output.pdf"


@dataclass(frozen=True)
class Settings:
    allowed_origins: frozenset[str] = ALLOWED_ORIGINS
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_field_bytes: int = MAX_FIELD_BYTES
    qpdf_command: tuple[str, ...] = QPDF_COMMAND
    qpdf_timeout: Optional[float] = QPDF_TIMEOUT_SECONDS or None
    workspaces_root: Optional[Path] = WORKSPACES_ROOT
    stale_workspace_seconds: float = STALE_WORKSPACE_SECONDS

    @property
    def max_upload_label(self) -> str:
        """Human readable ceiling used in the 413 message, e.g. "60MB"."""
        mb = self.max_upload_bytes / (1024 * 1024)
        if mb >= 1 and mb == int(mb):
            return f"{int(mb)}MB"
        return f"{self.max_upload_bytes} bytes"
