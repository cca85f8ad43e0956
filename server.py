from __future__ import annotations

import asyncio
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from webfiles_backend.archive import extract_async
from webfiles_backend.compressor import Compressor
from webfiles_backend.config import ServerConfig
from webfiles_backend.errors import (
    BinaryContentError,
    FileManagerError,
    FileOperationError,
    NotFoundError,
    PathEscapeError,
    UploadTooLargeError,
)
from webfiles_backend.logging_config import get_logger, setup_logging
from webfiles_backend.security import PathResolver, is_safe_basename
from webfiles_backend.workspace import (
    copy_path,
    delete_contents,
    delete_path,
    is_binary_file,
    list_directory,
    new_temp_archive_path,
    parent_entry,
    set_collation_locale,
    sweep_temp_archives,
)


logger = get_logger("webfiles_backend.server")

UPLOAD_CHUNK_BYTES = 1024 * 1024
WILDCARD = "*"


@dataclass(frozen=True)
class Services:
    config: ServerConfig
    resolver: PathResolver
    compressor: Compressor


class PathRequest(BaseModel):
    path: str = ""


class ContentRequest(BaseModel):
    path: str = ""
    content: Optional[str] = ""


class MoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_path: str = Field(alias="oldPath")
    new_path: str = Field(alias="newPath")


def get_services(request: Request) -> Services:
    return request.app.state.services


def _ok(message: Optional[str] = None, **extra) -> JSONResponse:
    content: dict = {"success": True}
    if message is not None:
        content["message"] = message
    content.update(extra)
    return JSONResponse(content)


def _fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def _run_io(failure: str, func, *args, **kwargs):
    """Run blocking filesystem work off the event loop, mapping OSError to FileOperationError."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except OSError as exc:
        raise FileOperationError(f"{failure}: {exc.strerror or exc}") from exc


def _require_not_root(services: Services, path: Path, action: str) -> None:
    if path == services.resolver.root:
        raise FileOperationError(f"Cannot {action} the root directory")


def _write_bytes(path: Path, content: str) -> None:
    path.write_bytes(content.encode("utf-8"))


def _read_text(path: Path) -> str:
    if is_binary_file(path):
        raise BinaryContentError("Binary file detected, it cannot be read as text")
    return path.read_bytes().decode("utf-8", errors="replace")


def _discard_temp_archive(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        # Left for the periodic sweep.
        logger.warning("Could not delete temp archive %s: %s", path.name, exc)


def folder_download_name(relative_path: str) -> str:
    base = relative_path.strip("/").replace("/", "-") or "Root"
    return f"{base} Download.7z"


def upload_file_name(raw: Optional[str]) -> str:
    # Browsers on Windows may send the full client path.
    return (raw or "").replace("\\", "/").rsplit("/", 1)[-1]


router = APIRouter()


@router.get("/health")
async def health() -> JSONResponse:
    return _ok(status="running")


@router.post("/create-file")
async def create_file(payload: ContentRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    await _run_io("Failed to create file", _write_bytes, full_path, payload.content or "")
    return _ok("File created.")


@router.post("/create-dir")
async def create_dir(payload: PathRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    await _run_io("Failed to create folder", full_path.mkdir, parents=True, exist_ok=True)
    return _ok("Folder created.")


@router.get("/list-files")
async def list_files(path: str = "", services: Services = Depends(get_services)) -> JSONResponse:
    resolver = services.resolver
    directory = resolver.resolve(path)
    entries = await asyncio.to_thread(
        list_directory, resolver, directory, services.config.show_folder_sizes
    )
    files = [entry.to_dict() for entry in entries]
    parent = parent_entry(resolver, directory)
    if parent is not None:
        files.insert(0, parent.to_dict())
    return _ok(path=resolver.relative_to_root(directory), files=files)


@router.post("/extract-file")
async def extract_file(payload: PathRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    if not full_path.is_file():
        raise NotFoundError("File not found")
    result = await extract_async(full_path, full_path.parent)
    return _ok("Archive extracted.", format=result.format.value)


@router.post("/compress-file")
async def compress_file(payload: PathRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    if full_path == services.resolver.root:
        # <root>.7z would land outside the root.
        raise PathEscapeError("Cannot compress the root directory in place")
    output_path = full_path.with_name(f"{full_path.name}.7z")
    await services.compressor.compress(full_path, output_path)
    return _ok("Compressed.", path=services.resolver.relative_to_root(output_path))


@router.post("/rename-move")
async def rename_move(payload: MoveRequest, services: Services = Depends(get_services)) -> JSONResponse:
    old_path = services.resolver.resolve(payload.old_path)
    new_path = services.resolver.resolve(payload.new_path)
    _require_not_root(services, old_path, "move")
    if not os.path.lexists(old_path):
        raise NotFoundError("File or directory not found")
    await _run_io("Failed to rename/move", os.rename, old_path, new_path)
    return _ok("Renamed/moved.")


@router.post("/copy-file")
async def copy_file(payload: MoveRequest, services: Services = Depends(get_services)) -> JSONResponse:
    old_path = services.resolver.resolve(payload.old_path)
    new_path = services.resolver.resolve(payload.new_path)
    is_dir = old_path.is_dir()
    await copy_path(old_path, new_path)
    return _ok("Folder copied." if is_dir else "File copied.")


@router.delete("/delete")
async def delete(payload: PathRequest, services: Services = Depends(get_services)) -> JSONResponse:
    if WILDCARD in payload.path:
        directory = services.resolver.resolve(payload.path.replace(WILDCARD, ""))
        deleted = await delete_contents(directory)
        return _ok("Folder contents deleted.", deleted=deleted)

    full_path = services.resolver.resolve(payload.path)
    _require_not_root(services, full_path, "delete")
    await delete_path(full_path)
    return _ok("Deleted.")


async def _save_upload(upload: UploadFile, target: Path, limit: int) -> int:
    partial = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.upload")
    written = 0
    try:
        with partial.open("wb") as fh:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if limit and written > limit:
                    raise UploadTooLargeError("File too large")
                await asyncio.to_thread(fh.write, chunk)
        await asyncio.to_thread(os.replace, partial, target)
    finally:
        if partial.exists():
            partial.unlink()
    return written


@router.post("/upload-file")
async def upload_file(
    path: str = "",
    file: Optional[UploadFile] = File(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    if file is None or not file.filename:
        return _fail("No file uploaded.", 400)
    name = upload_file_name(file.filename)
    if not is_safe_basename(name):
        return _fail("Invalid file name.", 400)

    directory = services.resolver.resolve(path)
    await _run_io("Failed to create folder", directory.mkdir, parents=True, exist_ok=True)
    try:
        size = await _save_upload(file, directory / name, services.config.max_upload_bytes)
    except OSError as exc:
        raise FileOperationError(f"Failed to store upload: {exc.strerror or exc}") from exc
    finally:
        await file.close()
    return _ok(f"File {name} uploaded.", size=size)


@router.get("/download-file")
async def download_file(path: str = "", services: Services = Depends(get_services)) -> FileResponse:
    full_path = services.resolver.resolve(path)
    if not full_path.is_file():
        raise NotFoundError("File not found")
    return FileResponse(full_path, filename=full_path.name)


@router.post("/edit-file")
async def edit_file(payload: ContentRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    if not full_path.is_file():
        raise NotFoundError("File not found")
    await _run_io("Failed to edit file", _write_bytes, full_path, payload.content or "")
    return _ok("File saved.")


@router.post("/get-file-content")
async def get_file_content(payload: PathRequest, services: Services = Depends(get_services)) -> JSONResponse:
    full_path = services.resolver.resolve(payload.path)
    if not full_path.is_file():
        raise NotFoundError("File not found")
    content = await _run_io("Failed to read file", _read_text, full_path)
    return _ok(content=content)


@router.get("/download-folder")
async def download_folder(path: str = "", services: Services = Depends(get_services)) -> FileResponse:
    folder = services.resolver.resolve(path)
    if not folder.exists():
        raise NotFoundError("Folder not found")

    archive_path = new_temp_archive_path(services.config.temp_dir)
    try:
        await services.compressor.compress(folder, archive_path)
    except FileManagerError:
        await asyncio.to_thread(_discard_temp_archive, archive_path)
        raise

    return FileResponse(
        archive_path,
        filename=folder_download_name(services.resolver.relative_to_root(folder)),
        media_type="application/x-7z-compressed",
        # Runs once the body is sent; archives orphaned by aborted downloads are swept later.
        background=BackgroundTask(_discard_temp_archive, archive_path),
    )


async def _sweep_worker(config: ServerConfig) -> None:
    # Periodically delete temp archives left behind by aborted folder downloads.
    while True:
        try:
            await asyncio.to_thread(
                sweep_temp_archives, config.temp_dir, config.temp_max_age_seconds
            )
        except Exception:
            logger.exception("Temp archive sweep failed")
        await asyncio.sleep(max(1.0, config.sweep_interval_seconds))


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    # Not being able to create the root or temp directory is fatal.
    services.config.ensure_dirs()
    logger.info("Serving %s (temp archives in %s)", services.resolver.root, services.config.temp_dir)

    task = asyncio.create_task(_sweep_worker(services.config))
    app.state.sweep_task = task
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def _file_manager_error_handler(request: Request, exc: FileManagerError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "%s: %s [request_id=%s] path=%s", type(exc).__name__, exc, request_id, request.url.path
    )
    return _fail(str(exc), exc.status_code)


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    config = config or ServerConfig.from_env()
    setup_logging("webfiles_backend")
    set_collation_locale()

    app = FastAPI(title="webfiles", lifespan=lifespan)
    app.state.services = Services(
        config=config,
        resolver=PathResolver(config.root_dir),
        compressor=Compressor(config),
    )

    # The bundled front-end may be opened from disk (Origin: null).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.info(
            "%s %s status=%d duration=%.3fs [request_id=%s]",
            request.method, request.url.path, response.status_code, duration, request_id,
        )
        response.headers["X-Request-ID"] = request_id
        # Make front-end iteration predictable: always re-fetch edited assets.
        if request.url.path.lower().endswith((".css", ".js", ".html")):
            response.headers["Cache-Control"] = "no-store"
        return response

    app.add_exception_handler(FileManagerError, _file_manager_error_handler)
    app.include_router(router)

    # Define API routes above, then mount static at '/'.
    if config.static_dir is not None and config.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(config.static_dir), html=True), name="static")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "3001"))
    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run("server:app", host=host, port=port, reload=False)
