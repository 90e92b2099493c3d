import base64
import json
import logging
import mimetypes
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from common.config import (
    LOCAL_CONTACTS_FILE,
    LOCAL_INPUT_DIR,
    LOCAL_JOBS_FILE,
    LOCAL_OUTPUT_DIR,
    STORAGE_BACKEND,
)
from common.job_schema import ContactForm, ContactMessage, PhotoJob, PhotoStatus

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Raised when an update would move a finished job to another status."""


def _merge(existing: PhotoJob, fields: dict) -> PhotoJob:
    new_status = fields.get("status", existing.status)
    if existing.status.is_terminal and PhotoStatus(new_status) is not existing.status:
        raise InvalidTransitionError(
            f"Photo {existing.id} is already {existing.status.value}"
        )
    # model_validate re-runs the status/result check on the merged record
    return PhotoJob.model_validate({**existing.model_dump(), **fields})


# ------------------------------------------------------------------------------
# IN-MEMORY STORE
# Lives as long as the process. Every read-modify-write happens under one lock.
# ------------------------------------------------------------------------------

class MemStorage:
    def __init__(self):
        self._photos: Dict[int, PhotoJob] = {}
        self._contacts: Dict[int, ContactMessage] = {}
        self._next_photo_id = 1
        self._next_contact_id = 1
        self._lock = threading.Lock()

    def create_photo(
        self,
        original_url: str,
        status: PhotoStatus = PhotoStatus.PROCESSING,
        enhanced_url: Optional[str] = None,
    ) -> PhotoJob:
        with self._lock:
            photo = PhotoJob(
                id=self._next_photo_id,
                original_url=original_url,
                enhanced_url=enhanced_url,
                status=status,
            )
            self._photos[photo.id] = photo
            self._next_photo_id += 1
            return photo

    def get_photo(self, photo_id: int) -> Optional[PhotoJob]:
        with self._lock:
            return self._photos.get(photo_id)

    def update_photo(self, photo_id: int, **fields) -> Optional[PhotoJob]:
        with self._lock:
            existing = self._photos.get(photo_id)
            if existing is None:
                return None
            updated = _merge(existing, fields)
            self._photos[photo_id] = updated
            return updated

    def create_contact(self, form: ContactForm) -> ContactMessage:
        with self._lock:
            contact = ContactMessage(id=self._next_contact_id, **form.model_dump())
            self._contacts[contact.id] = contact
            self._next_contact_id += 1
            return contact


# ------------------------------------------------------------------------------
# JSON FILE STORE
# Same contract, records kept in data/jobs.json and data/contacts.json so they
# survive a restart.
# ------------------------------------------------------------------------------

class JsonFileStorage:
    def __init__(self, jobs_file: Path = LOCAL_JOBS_FILE, contacts_file: Path = LOCAL_CONTACTS_FILE):
        self.jobs_file = Path(jobs_file)
        self.contacts_file = Path(contacts_file)
        self._lock = threading.Lock()

    @staticmethod
    def _read(path: Path) -> List[dict]:
        content = path.read_text() if path.exists() else "[]"
        if not content.strip():
            content = "[]"
        return json.loads(content)

    @staticmethod
    def _write(path: Path, records: List[dict]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(records, indent=2))

    def _read_photos(self) -> List[PhotoJob]:
        return [PhotoJob.model_validate(x) for x in self._read(self.jobs_file)]

    def _write_photos(self, photos: List[PhotoJob]) -> None:
        self._write(self.jobs_file, [p.model_dump(mode="json") for p in photos])

    def create_photo(
        self,
        original_url: str,
        status: PhotoStatus = PhotoStatus.PROCESSING,
        enhanced_url: Optional[str] = None,
    ) -> PhotoJob:
        with self._lock:
            photos = self._read_photos()
            next_id = max((p.id for p in photos), default=0) + 1
            photo = PhotoJob(
                id=next_id,
                original_url=original_url,
                enhanced_url=enhanced_url,
                status=status,
            )
            photos.append(photo)
            self._write_photos(photos)
            return photo

    def get_photo(self, photo_id: int) -> Optional[PhotoJob]:
        with self._lock:
            return next((p for p in self._read_photos() if p.id == photo_id), None)

    def update_photo(self, photo_id: int, **fields) -> Optional[PhotoJob]:
        with self._lock:
            photos = self._read_photos()
            for i, p in enumerate(photos):
                if p.id == photo_id:
                    photos[i] = _merge(p, fields)
                    self._write_photos(photos)
                    return photos[i]
            return None

    def create_contact(self, form: ContactForm) -> ContactMessage:
        with self._lock:
            records = self._read(self.contacts_file)
            next_id = max((r["id"] for r in records), default=0) + 1
            contact = ContactMessage(id=next_id, **form.model_dump())
            records.append(contact.model_dump(mode="json"))
            self._write(self.contacts_file, records)
            return contact


def build_storage(backend: str = STORAGE_BACKEND):
    """Returns the job store selected by STORAGE_BACKEND."""
    if backend == "memory":
        return MemStorage()
    if backend == "local":
        return JsonFileStorage()
    raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")


# ------------------------------------------------------------------------------
# FILE HELPERS
# Uploaded and produced images live on local disk; records only hold their paths.
# ------------------------------------------------------------------------------

def save_upload(filename: Optional[str], content_bytes: bytes, input_dir: Path = LOCAL_INPUT_DIR) -> Path:
    """Writes the uploaded bytes under input_dir with a unique name, keeping the suffix."""
    suffix = Path(filename or "").suffix.lower() or ".jpg"
    input_dir.mkdir(parents=True, exist_ok=True)
    dest = input_dir / f"{uuid.uuid4().hex}{suffix}"
    dest.write_bytes(content_bytes)
    return dest


def output_path_for(photo_id: int, output_dir: Path = LOCAL_OUTPUT_DIR) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir / f"enhanced_{int(time.time() * 1000)}_{photo_id}.jpg"


def read_as_data_uri(path) -> str:
    """Inlines a stored image as data:<mime>;base64,..."""
    path = Path(path)
    mime, _ = mimetypes.guess_type(path.name)
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime or 'image/jpeg'};base64,{encoded}"


def delete_files(paths: Iterable) -> None:
    for path in paths:
        try:
            Path(path).unlink()
            logger.info("Removed %s", path)
        except OSError as e:
            logger.warning("Cleanup of %s failed: %s", path, e)
