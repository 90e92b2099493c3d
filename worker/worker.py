import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from common.config import LOCAL_OUTPUT_DIR, RETENTION_SECONDS, WORKER_THREADS
from common.imaging import ImagePipeline
from common.job_schema import ImageAnalysis, PhotoStatus
from common.remote import RemoteEnhancer, RemoteServiceError
from common.storage import delete_files, output_path_for

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1920
JPEG_QUALITY = 90
OUTPUT_QUALITY = 95


class DelayedRunner:
    """
    Runs delayed calls from one shared daemon thread.

    Tasks wait in a heap ordered by due time, so any number of pending
    cleanups costs one thread. Nothing is persisted; pending tasks are lost
    on restart.
    """

    def __init__(self, name: str = "delayed-runner"):
        self.name = name
        self._queue = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    def __call__(self, delay: float, fn: Callable, *args) -> None:
        with self._cond:
            heapq.heappush(self._queue, (time.monotonic() + delay, next(self._counter), fn, args))
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
            self._cond.notify()

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def _run(self) -> None:
        while True:
            with self._cond:
                while True:
                    now = time.monotonic()
                    if self._queue and self._queue[0][0] <= now:
                        break
                    self._cond.wait(self._queue[0][0] - now if self._queue else None)
                _, _, fn, args = heapq.heappop(self._queue)
            try:
                fn(*args)
            except Exception:
                logger.exception("Delayed call to %s failed", getattr(fn, "__name__", fn))


schedule_later = DelayedRunner("file-cleanup")


# ---------- local chains ----------

def restore_locally(image: ImagePipeline, analysis: ImageAnalysis) -> ImagePipeline:
    """Full local restoration: denoise, colour, contrast, final grade."""
    image = (
        image.normalize(cutoff=2)
        .median(3)
        .blur(0.3)
        .sharpen(radius=0.5, percent=100, threshold=2)
        .linear(1.05, 5)
    )

    if analysis.is_grayscale:
        # warm film base, then push colour into it
        image = (
            image.tint((255, 245, 220))
            .modulate(brightness=1.15, saturation=2.2, hue=12)
            .linear(1.25, -(128 * 1.25) + 140)
        )
    else:
        image = (
            image.modulate(brightness=1.08, saturation=1.6, hue=8)
            .linear(1.15, -(128 * 1.15) + 130)
        )

    if analysis.damage_level != "low":
        image = image.median(3).sharpen(radius=1.0, percent=120, threshold=3)

    return (
        image.gamma(1.05)
        .sharpen(radius=0.8, percent=150, threshold=3)
        .modulate(brightness=1.03, saturation=1.25, hue=2)
    )


def enhance_basic(image: ImagePipeline) -> ImagePipeline:
    """Fallback chain: brighten, saturate, sharpen, lift midtones."""
    return image.modulate(brightness=1.15, saturation=1.3).sharpen().gamma(1.1)


# ---------- orchestration ----------

class PhotoEnhancer:
    """
    Drives one photo job from processing to completed or failed.

    The primary path uses the hosted models when they are configured and the
    local restoration chain otherwise. If it raises, the basic local chain is
    tried once. Source and result files are removed after the retention delay
    whatever the outcome.
    """

    def __init__(
        self,
        store,
        remote: Optional[RemoteEnhancer] = None,
        output_dir: Path = LOCAL_OUTPUT_DIR,
        retention_seconds: float = RETENTION_SECONDS,
        scheduler: Callable = schedule_later,
    ):
        self.store = store
        self.remote = remote
        self.output_dir = Path(output_dir)
        self.retention_seconds = retention_seconds
        self.scheduler = scheduler

    def process(self, photo_id: int, source_path) -> PhotoStatus:
        source_path = Path(source_path)
        output_path = None
        logger.info("Starting processing for photo %s", photo_id)

        try:
            output_path = output_path_for(photo_id, self.output_dir)
            try:
                self._enhance(photo_id, source_path, output_path)
            except Exception as e:
                logger.warning("Primary enhancement failed for photo %s, using fallback: %s", photo_id, e)
                self._fallback(source_path, output_path)

            self.store.update_photo(photo_id, status=PhotoStatus.COMPLETED, enhanced_url=str(output_path))
            logger.info("Photo %s processing completed", photo_id)
            status = PhotoStatus.COMPLETED
        except Exception:
            logger.exception("Failed to process photo %s", photo_id)
            self._mark_failed(photo_id)
            status = PhotoStatus.FAILED

        self._schedule_cleanup(source_path, output_path)
        return status

    def _enhance(self, photo_id: int, source_path: Path, output_path: Path) -> None:
        source = ImagePipeline.open(source_path)
        logger.info("Photo %s is %sx%s", photo_id, *source.size)
        prepared = source.resize_within(MAX_DIMENSION, MAX_DIMENSION)

        analysis = self._analyze(photo_id, prepared)

        if self.remote is not None and self.remote.can_transform:
            mode = analysis.choose_mode()
            result_url = self.remote.transform(source_path, mode)
            result = ImagePipeline.from_bytes(self.remote.download(result_url))
            result.resize_within(MAX_DIMENSION, MAX_DIMENSION).save(output_path, quality=OUTPUT_QUALITY)
            logger.info("Photo %s enhanced remotely (%s)", photo_id, mode.value)
            return

        restore_locally(prepared, analysis).save(output_path, quality=OUTPUT_QUALITY)
        logger.info("Photo %s enhanced locally", photo_id)

    def _analyze(self, photo_id: int, image: ImagePipeline) -> ImageAnalysis:
        if self.remote is not None and self.remote.can_analyze:
            try:
                return self.remote.analyze(image.encode(quality=JPEG_QUALITY))
            except RemoteServiceError as e:
                logger.warning("Analysis failed for photo %s, using local heuristics: %s", photo_id, e)
        grayscale = image.is_grayscale()
        logger.info("Photo %s detected as %s", photo_id, "black and white" if grayscale else "colour")
        return ImageAnalysis(is_grayscale=grayscale)

    def _fallback(self, source_path: Path, output_path: Path) -> None:
        image = ImagePipeline.open(source_path).resize_within(MAX_DIMENSION, MAX_DIMENSION)
        enhance_basic(image).save(output_path, quality=JPEG_QUALITY)

    def _mark_failed(self, photo_id: int) -> None:
        try:
            self.store.update_photo(photo_id, status=PhotoStatus.FAILED)
        except Exception:
            logger.exception("Could not mark photo %s as failed", photo_id)

    def _schedule_cleanup(self, *paths: Optional[Path]) -> None:
        existing = [p for p in paths if p is not None and p.exists()]
        if not existing:
            return
        try:
            self.scheduler(self.retention_seconds, delete_files, existing)
        except Exception:
            logger.exception("Could not schedule cleanup of %s", existing)


class JobDispatcher:
    """Hands jobs to a bounded thread pool without waiting for them."""

    def __init__(self, enhancer: PhotoEnhancer, executor=None):
        self.enhancer = enhancer
        self.executor = executor or ThreadPoolExecutor(
            max_workers=WORKER_THREADS, thread_name_prefix="photo-worker"
        )

    def submit(self, photo_id: int, source_path) -> Future:
        return self.executor.submit(self.enhancer.process, photo_id, source_path)

    def shutdown(self, wait: bool = False) -> None:
        self.executor.shutdown(wait=wait)
