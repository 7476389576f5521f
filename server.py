from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from doclock_backend.config import (
    HOST,
    LOG_LEVEL,
    PORT,
    PROTECT_PREFIX,
    UNLOCK_PREFIX,
    Settings,
)
from doclock_backend.qpdf import QpdfRunner, TransformErrorKind, TransformResult
from doclock_backend.security import check_tool_argument, cors_headers
from doclock_backend.uploads import UploadParseError, read_upload
from doclock_backend.workspace import WorkspaceProvider


logger = logging.getLogger(__name__)

MIN_PROTECT_PASSWORD_LENGTH = 3


@dataclass(frozen=True)
class Operation:
    name: str
    prefix: str
    filename: str
    label: str


PROTECT = Operation("protect", PROTECT_PREFIX, "protected.pdf", "Protect failed: ")
UNLOCK = Operation("unlock", UNLOCK_PREFIX, "unlocked.pdf", "Unlock failed: ")


def _text(status_code: int, body: str) -> Response:
    # PlainTextResponse sets "text/plain; charset=utf-8".
    return PlainTextResponse(body, status_code=status_code)


def _password_length(password: str) -> int:
    # Counted in UTF-16 code units, the way browser clients count it.
    return len(password.encode("utf-16-le")) // 2


def _validate_password(op: Operation, password: str) -> Optional[Response]:
    if op is PROTECT:
        if not password or _password_length(password) < MIN_PROTECT_PASSWORD_LENGTH:
            return _text(400, "Password too short.")
    elif not password:
        # Unlock accepts any length >= 1: real PDFs do have 1-2 char passwords.
        return _text(400, "Missing password.")
    try:
        check_tool_argument(password)
    except ValueError:
        return _text(400, "Invalid password.")
    return None


def _failure_response(op: Operation, result: TransformResult) -> Response:
    if result.error is TransformErrorKind.BAD_CREDENTIAL:
        return _text(403, "Incorrect password or cannot unlock this PDF.")
    return _text(500, op.label + result.detail)


async def _run_transform(request: Request, op: Operation) -> Response:
    settings: Settings = request.app.state.settings
    workspaces: WorkspaceProvider = request.app.state.workspaces
    qpdf: QpdfRunner = request.app.state.qpdf

    with workspaces.scoped(op.prefix) as ws:
        try:
            upload = await read_upload(
                request.headers.get("content-type"),
                request.stream(),
                ws.input_path,
                max_file_bytes=settings.max_upload_bytes,
                max_field_bytes=settings.max_field_bytes,
            )

            if upload.too_large:
                return _text(413, f"File too large (max {settings.max_upload_label}).")
            if not upload.got_file:
                return _text(400, "Missing file.")

            invalid = _validate_password(op, upload.password)
            if invalid is not None:
                return invalid

            if op is PROTECT:
                result = await qpdf.protect(ws.input_path, ws.output_path, upload.password, upload.strength)
            else:
                result = await qpdf.unlock(ws.input_path, ws.output_path, upload.password)
            if not result.ok:
                return _failure_response(op, result)

            pdf_bytes = await run_in_threadpool(ws.output_path.read_bytes)
        except UploadParseError as e:
            # Expected client-side failure: already logged by read_upload, no traceback.
            return _text(500, op.label + str(e))
        except Exception as e:
            logger.exception("%s request failed", op.name)
            return _text(500, op.label + str(e))

    headers = {
        "Content-Disposition": f'attachment; filename="{op.filename}"',
        "Cache-Control": "no-store",
    }
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)


router = APIRouter()


@router.post("/api/protect")
async def protect_pdf(request: Request) -> Response:
    return await _run_transform(request, PROTECT)


@router.post("/api/unlock")
async def unlock_pdf(request: Request) -> Response:
    return await _run_transform(request, UNLOCK)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Sweep workspaces orphaned by a previous crash; live requests always clean up after themselves.
    settings: Settings = app.state.settings
    try:
        await run_in_threadpool(app.state.workspaces.sweep_stale_workspaces, settings.stale_workspace_seconds)
    except OSError:
        logger.exception("Stale workspace sweep failed")
    logger.info("DocLock API running (/api/protect + /api/unlock)")
    yield


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    # Only the two POST routes may answer: no docs, no slash redirects.
    app = FastAPI(
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.state.settings = settings
    app.state.workspaces = WorkspaceProvider(settings.workspaces_root)
    app.state.qpdf = QpdfRunner(settings.qpdf_command, timeout=settings.qpdf_timeout)

    @app.middleware("http")
    async def _cors(request: Request, call_next):
        cors = cors_headers(request.headers.get("origin"), settings.allowed_origins)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors)

        response = await call_next(request)
        for key, value in cors.items():
            if key == "Vary":
                response.headers.add_vary_header(value)
            else:
                response.headers[key] = value
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> Response:
        # Wrong method on a known path is reported like an unknown path.
        if exc.status_code in (404, 405):
            return _text(404, "Not found")
        return _text(exc.status_code, str(exc.detail))

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("server:app", host=HOST, port=PORT, reload=False, log_level=LOG_LEVEL.lower())
