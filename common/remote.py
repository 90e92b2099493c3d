"""
Hosted model adapter: OpenAI for image analysis, Replicate for image-to-image models.

Both services are optional. A missing key means the matching capability is off
(can_analyze / can_transform) and calling it raises RemoteServiceError, the same
way a timeout or a model error does. Callers treat every RemoteServiceError as
routine and fall back to local processing.
"""

import base64
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import requests

from common.config import (
    OPENAI_API_KEY,
    OPENAI_MODEL,
    PREDICTION_POLL_INTERVAL,
    PREDICTION_TIMEOUT,
    REMOTE_TIMEOUT,
    REPLICATE_API_TOKEN,
)
from common.job_schema import EnhancementMode, ImageAnalysis

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """Analyze this photo for restoration. Return JSON with:
{
  "isBlackAndWhite": boolean,
  "hasFaces": boolean,
  "damageLevel": "low|medium|high",
  "recommendedEnhancements": ["list of specific enhancements"]
}"""

FACE_RESTORE_MODEL = "sczhou/codeformer:7de2b26c81e908ba9841a956fe2ab1e0a4e936cc8394d4c64b2cab85b1f7b8f0"
UPSCALE_MODEL = "nightmareai/real-esrgan:42fed1c4974146d4d2414e2be2c5277c7fcf05fcc3a73abf41610695738c1d7b"
COLORIZE_MODEL = "arielreplicate/deoldify_image:4bdd09845c459c7bf2bb8c2726c9e6d0f1e10a6b88ff5b69a7fa4bf82b354088"

MAX_UPSCALE = 8

TERMINAL_PREDICTION_STATES = ("succeeded", "failed", "canceled")


class RemoteServiceError(Exception):
    """A hosted model call failed or is not configured."""


def _model_input(mode: EnhancementMode, parameters: dict) -> tuple:
    """Returns (model reference, input dict without the image) for mode."""
    if mode is EnhancementMode.FACE_RESTORE:
        return FACE_RESTORE_MODEL, {
            "codeformer_fidelity": parameters.get("fidelity", 0.7),
            "background_enhance": True,
            "face_upsample": True,
            "upscale": 2,
        }
    if mode is EnhancementMode.UPSCALE:
        return UPSCALE_MODEL, {
            "scale": min(parameters.get("scale", 4), MAX_UPSCALE),
            "face_enhance": True,
        }
    if mode is EnhancementMode.COLORIZE:
        return COLORIZE_MODEL, {
            "model_name": "stable",
            "render_factor": parameters.get("render_factor", 35),
        }
    return UPSCALE_MODEL, {
        "scale": min(parameters.get("scale", 2), MAX_UPSCALE),
        "face_enhance": True,
    }


def _result_url(output: Any) -> str:
    # Replicate returns a URL string, a FileOutput, or a list of either
    if isinstance(output, (list, tuple)):
        if not output:
            raise RemoteServiceError("Model returned an empty list")
        output = output[0]
    url = getattr(output, "url", output)
    if not url:
        raise RemoteServiceError("Model returned no output")
    return str(url)


class RemoteEnhancer:
    def __init__(
        self,
        openai_client=None,
        replicate_client=None,
        model: str = OPENAI_MODEL,
        timeout: float = REMOTE_TIMEOUT,
        prediction_timeout: float = PREDICTION_TIMEOUT,
        poll_interval: float = PREDICTION_POLL_INTERVAL,
    ):
        self.openai_client = openai_client
        self.replicate_client = replicate_client
        self.model = model
        self.timeout = timeout
        self.prediction_timeout = prediction_timeout
        self.poll_interval = poll_interval

    @property
    def can_analyze(self) -> bool:
        return self.openai_client is not None

    @property
    def can_transform(self) -> bool:
        return self.replicate_client is not None

    def analyze(self, image_bytes: bytes) -> ImageAnalysis:
        """Asks the vision model what the photo needs. image_bytes should be a JPEG."""
        if not self.can_analyze:
            raise RemoteServiceError("Image analysis is not configured")

        encoded = base64.b64encode(image_bytes).decode("ascii")
        try:
            response = self.openai_client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": "You are an expert photo restoration AI. "
                                   "Analyze images and provide detailed restoration recommendations.",
                    },
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": ANALYSIS_PROMPT},
                            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
                        ],
                    },
                ],
                response_format={"type": "json_object"},
                max_tokens=800,
            )
            content = response.choices[0].message.content or "{}"
            data = json.loads(content)
        except Exception as e:
            raise RemoteServiceError(f"Image analysis failed: {e}") from e

        if not isinstance(data, dict):
            raise RemoteServiceError("Image analysis returned non-object JSON")
        analysis = ImageAnalysis.from_response(data)
        logger.info("Analysis result: %s", analysis.model_dump())
        return analysis

    def transform(self, image, mode: EnhancementMode, parameters: Optional[dict] = None) -> str:
        """
        Runs the model for mode and returns the result URL.

        image is a local path or the URL of an earlier result. Comprehensive
        mode upscales first and then restores faces on the upscaled output.
        """
        if not self.can_transform:
            raise RemoteServiceError("Remote enhancement is not configured")

        mode = EnhancementMode(mode)
        parameters = parameters or {}
        if mode is EnhancementMode.COMPREHENSIVE:
            upscaled = self.transform(image, EnhancementMode.UPSCALE, parameters)
            return self.transform(upscaled, EnhancementMode.FACE_RESTORE, {"fidelity": 0.8, **parameters})

        model_ref, model_input = _model_input(mode, parameters)
        logger.info("Running %s for mode %s", model_ref.split(":")[0], mode.value)
        try:
            prediction = self._start(model_ref, image, model_input)
            self._wait(prediction, mode)
        except RemoteServiceError:
            raise
        except Exception as e:
            raise RemoteServiceError(f"{mode.value} model failed: {e}") from e

        if prediction.status != "succeeded":
            raise RemoteServiceError(f"{mode.value} model {prediction.status}: {prediction.error}")
        return _result_url(prediction.output)

    def _start(self, model_ref: str, image, model_input: dict):
        version = model_ref.split(":", 1)[1]
        if isinstance(image, str) and image.startswith(("http://", "https://")):
            return self.replicate_client.predictions.create(version=version, input={"image": image, **model_input})
        # the file is uploaded by create, so it can be closed right after
        with open(Path(image), "rb") as image_file:
            return self.replicate_client.predictions.create(version=version, input={"image": image_file, **model_input})

    def _wait(self, prediction, mode: EnhancementMode) -> None:
        deadline = time.monotonic() + self.prediction_timeout
        while prediction.status not in TERMINAL_PREDICTION_STATES:
            if time.monotonic() >= deadline:
                try:
                    prediction.cancel()
                except Exception as e:
                    logger.warning("Cancel of prediction %s failed: %s", prediction.id, e)
                raise RemoteServiceError(
                    f"{mode.value} model timed out after {self.prediction_timeout:.0f}s"
                )
            time.sleep(self.poll_interval)
            prediction.reload()

    def download(self, url: str) -> bytes:
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise RemoteServiceError(f"Download of {url} failed: {e}") from e
        if not response.content:
            raise RemoteServiceError(f"Download of {url} returned no content")
        return response.content


def build_remote_enhancer() -> RemoteEnhancer:
    """Creates SDK clients for whichever services have credentials configured."""
    openai_client = None
    replicate_client = None

    if OPENAI_API_KEY:
        from openai import OpenAI
        openai_client = OpenAI(api_key=OPENAI_API_KEY, timeout=REMOTE_TIMEOUT)
    else:
        logger.info("OPENAI_API_KEY not set, using local image analysis")

    if REPLICATE_API_TOKEN:
        import replicate
        replicate_client = replicate.Client(api_token=REPLICATE_API_TOKEN, timeout=REMOTE_TIMEOUT)
    else:
        logger.info("REPLICATE_API_TOKEN not set, using local enhancement only")

    return RemoteEnhancer(openai_client=openai_client, replicate_client=replicate_client)
