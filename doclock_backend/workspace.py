from __future__ import annotations

import logging
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .config import INPUT_FILENAME, OUTPUT_FILENAME, WORKSPACE_PREFIXES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    root: Path
    input_path: Path
    output_path: Path

    def release(self) -> None:
        # Idempotent: a partially or fully removed directory is fine.
        shutil.rmtree(self.root, ignore_errors=True)


def _now_epoch() -> float:
    return time.time()


class WorkspaceProvider:
    """Hands out private per-request directories.

    root=None means the OS temp dir. Tests pass their own root so they can
    check that nothing is left behind.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root).resolve() if root is not None else None

    def acquire(self, prefix: str) -> Workspace:
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        # mkdtemp creates the directory atomically (O_EXCL semantics) and
        # retries on name clashes, so concurrent requests never share one.
        root = Path(tempfile.mkdtemp(prefix=prefix, dir=self.root))
        return Workspace(
            root=root,
            input_path=root / INPUT_FILENAME,
            output_path=root / OUTPUT_FILENAME,
        )

    @contextmanager
    def scoped(self, prefix: str) -> Iterator[Workspace]:
        ws = self.acquire(prefix)
        try:
            yield ws
        finally:
            ws.release()

    def sweep_stale_workspaces(
        self,
        max_age_seconds: float,
        prefixes: Iterable[str] = WORKSPACE_PREFIXES,
    ) -> int:
        """Delete workspaces left behind by a crashed process.

        Only directories directly under the root whose name starts with one of
        our prefixes are considered. Returns the number of deleted workspaces.
        """
        root = self.root if self.root is not None else Path(tempfile.gettempdir())
        if not root.exists():
            return 0

        prefixes = tuple(prefixes)
        now = _now_epoch()
        deleted = 0
        for child in root.iterdir():
            if not child.name.startswith(prefixes):
                continue
            try:
                if not child.is_dir() or child.is_symlink():
                    continue
                age = now - child.stat().st_mtime
            except OSError:
                # Removed by someone else between iterdir() and stat().
                continue
            if age > max(0.0, max_age_seconds):
                shutil.rmtree(child, ignore_errors=True)
                deleted += 1
        if deleted:
            logger.info("Removed %d stale workspace(s) under %s", deleted, root)
        return deleted
