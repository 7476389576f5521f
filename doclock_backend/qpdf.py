from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


class CipherStrength(IntEnum):
    AES_128 = 128
    AES_256 = 256

    @classmethod
    def default(cls) -> "CipherStrength":
        return cls.AES_256

    @classmethod
    def coerce(cls, value: object) -> "CipherStrength":
        """Map a form value to a supported strength; unknown input -> strongest."""
        try:
            return cls(int(str(value).strip()))
        except (TypeError, ValueError):
            return cls.default()


class TransformErrorKind(str, Enum):
    TOOL_FAILED = "tool_failed"
    BAD_CREDENTIAL = "bad_credential"
    TIMED_OUT = "timed_out"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class TransformResult:
    ok: bool
    error: Optional[TransformErrorKind] = None
    detail: str = ""
    returncode: Optional[int] = None


def protect_args(input_path: Path, output_path: Path, password: str, strength: CipherStrength) -> list[str]:
    # Same password for user and owner: it both opens and fully controls the file.
    args = [
        "--encrypt",
        f"--user-password={password}",
        f"--owner-password={password}",
        f"--bits={int(strength)}",
    ]
    if strength == CipherStrength.AES_128:
        # 128-bit defaults to RC4 in qpdf.
        args.append("--use-aes=y")
    args += ["--", str(input_path), str(output_path)]
    return args


def unlock_args(input_path: Path, output_path: Path, password: str) -> list[str]:
    return [
        f"--password={password}",
        "--decrypt",
        "--",
        str(input_path),
        str(output_path),
    ]


class QpdfRunner:
    """Runs qpdf without a shell and classifies the outcome.

    `command` is the argv prefix (normally just ("qpdf",)); operation
    arguments are appended as separate list items.
    """

    def __init__(self, command: Sequence[str] = ("qpdf",), timeout: Optional[float] = 120.0) -> None:
        if not command:
            raise ValueError("qpdf command must not be empty")
        self.command = tuple(command)
        self.timeout = timeout if timeout and timeout > 0 else None

    async def protect(
        self,
        input_path: Path,
        output_path: Path,
        password: str,
        strength: CipherStrength = CipherStrength.AES_256,
    ) -> TransformResult:
        args = protect_args(input_path, output_path, password, CipherStrength(strength))
        return await self._run("protect", args, failure=TransformErrorKind.TOOL_FAILED)

    async def unlock(self, input_path: Path, output_path: Path, password: str) -> TransformResult:
        # A non-zero exit here is the normal "wrong password" signal.
        args = unlock_args(input_path, output_path, password)
        return await self._run("unlock", args, failure=TransformErrorKind.BAD_CREDENTIAL)

    async def _run(self, op: str, args: list[str], failure: TransformErrorKind) -> TransformResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Could not start %s for %s: %s", self.command[0], op, e)
            return TransformResult(
                ok=False,
                error=TransformErrorKind.LAUNCH_FAILED,
                detail=f"could not start {self.command[0]}: {e}",
            )

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.warning("qpdf %s timed out after %ss (pid %s)", op, self.timeout, proc.pid)
            return TransformResult(
                ok=False,
                error=TransformErrorKind.TIMED_OUT,
                detail=f"qpdf {op} timed out after {self.timeout:g}s",
            )
        except asyncio.CancelledError:
            # Request went away; don't leave the child running.
            await _kill(proc)
            raise

        code = proc.returncode
        if code == 0:
            return TransformResult(ok=True, returncode=0)

        detail = (stderr or b"").decode("utf-8", errors="replace").strip()
        logger.warning("qpdf %s exited with %s", op, code)
        return TransformResult(
            ok=False,
            error=failure,
            detail=detail or f"qpdf {op} failed ({code})",
            returncode=code,
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
