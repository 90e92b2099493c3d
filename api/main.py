import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.config import LOG_LEVEL, MAX_UPLOAD_BYTES
from common.job_schema import ContactForm, PhotoStatus
from common.remote import build_remote_enhancer
from common.storage import build_storage, delete_files, read_as_data_uri, save_upload
from worker.worker import JobDispatcher, PhotoEnhancer

logger = logging.getLogger(__name__)


def _field_errors(exc: ValidationError) -> list:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]


def create_app(store=None, dispatcher: Optional[JobDispatcher] = None) -> FastAPI:
    """
    Builds the API around one job store and one dispatcher.

    Both default to the configured implementations; tests pass their own.
    """
    if store is None:
        store = build_storage()
    if dispatcher is None:
        dispatcher = JobDispatcher(PhotoEnhancer(store, remote=build_remote_enhancer()))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.dispatcher.shutdown()

    app = FastAPI(title="Photo Restoration API", lifespan=lifespan)
    app.state.store = store
    app.state.dispatcher = dispatcher

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    # ---------- API endpoints ----------

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/photos/upload")
    async def upload_photo(request: Request, photo: Optional[UploadFile] = File(None)):
        if photo is None or not photo.filename:
            raise HTTPException(status_code=400, detail="No file uploaded")
        if not (photo.content_type or "").startswith("image/"):
            raise HTTPException(status_code=400, detail="Only image files are allowed")

        content = await photo.read(MAX_UPLOAD_BYTES + 1)
        if not content:
            raise HTTPException(status_code=400, detail="No file uploaded")
        if len(content) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=400, detail="File too large (max 10MB)")

        store = request.app.state.store
        job = None
        path = None
        try:
            path = save_upload(photo.filename, content)
            job = store.create_photo(original_url=str(path))
            request.app.state.dispatcher.submit(job.id, path)
        except Exception:
            logger.exception("Upload error")
            if job is not None:
                # nothing will pick this job up
                store.update_photo(job.id, status=PhotoStatus.FAILED)
            if path is not None:
                delete_files([path])
            raise HTTPException(status_code=500, detail="Failed to upload photo")

        return {
            "photoId": job.id,
            "message": "Photo uploaded successfully, processing started",
        }

    @app.get("/api/photos/{photo_id}")
    def read_photo(request: Request, photo_id: int):
        job = request.app.state.store.get_photo(photo_id)
        if not job:
            raise HTTPException(status_code=404, detail="Photo not found")

        body = job.to_wire()
        if job.status is PhotoStatus.COMPLETED:
            try:
                body["originalImage"] = read_as_data_uri(job.original_url)
                body["enhancedImage"] = read_as_data_uri(job.enhanced_url)
            except OSError as e:
                logger.error("File read error for photo %s: %s", photo_id, e)
                body.pop("originalImage", None)
        return body

    @app.post("/api/contact")
    async def contact(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(
                status_code=400,
                content={"message": "Invalid form data", "errors": [{"field": "body", "message": "Invalid JSON"}]},
            )

        try:
            form = ContactForm.model_validate(payload)
        except ValidationError as e:
            return JSONResponse(
                status_code=400,
                content={"message": "Invalid form data", "errors": _field_errors(e)},
            )

        message = request.app.state.store.create_contact(form)
        return {"message": "Message sent successfully", "contact": message.to_wire()}

    return app


logging.basicConfig(level=LOG_LEVEL)
app = create_app()
