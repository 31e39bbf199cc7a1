"""
Inference gateway for image-to-3D generation.

Responsibilities:
- Submit an image URL plus generation knobs to the remote model
- Support blocking (synchronous) calls and create-then-poll jobs
- Normalize the remote output (string, list or mapping) into one mesh URL
- Classify remote failures (auth, rate limit, transient, job failure)

The default implementation talks to Replicate's prediction API over HTTP.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple, Union, runtime_checkable
from urllib.parse import urlparse

import requests

from app.core.errors import (
    AuthError,
    InferenceTimeoutError,
    RateLimitError,
    RemoteJobError,
    ServiceError,
)
from app.core.logger import get_logger
from app.core.utils import run_blocking
from app.models.request_models import GenerationParams
from app.services.retry import Sleep, best_effort

logger = get_logger(__name__)

MESH_EXTENSIONS = (".glb", ".obj", ".ply")
OUTPUT_KEYS = ("mesh", "model", "output", "url")

POLL_INITIAL_DELAY = 1.0
POLL_BACKOFF_FACTOR = 1.5
POLL_MAX_DELAY = 10.0
POLL_MAX_ATTEMPTS = 60

TERMINAL_FAILURES = ("failed", "canceled")


class InferenceRequest(GenerationParams):
    """Structured generation parameters sent to the remote model."""
    image_url: str

    def to_model_input(self) -> Dict[str, Any]:
        return {
            "image": self.image_url,
            "mc_resolution": self.mc_resolution,
            "foreground_ratio": self.foreground_ratio,
        }


@dataclass(frozen=True)
class MeshResult:
    mesh_url: str
    job_id: Optional[str] = None


# ==================== OUTPUT NORMALIZATION ====================

@dataclass(frozen=True)
class ScalarOutput:
    value: str


@dataclass(frozen=True)
class ListOutput:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class KeyedOutput:
    mapping: Dict[str, Any]


GatewayOutput = Union[ScalarOutput, ListOutput, KeyedOutput]


def _unexpected(raw: Any) -> RemoteJobError:
    return RemoteJobError(
        f"Invalid model output: unexpected output format ({type(raw).__name__})"
    )


def parse_output(raw: Any) -> GatewayOutput:
    """Tag a raw remote output with its shape."""
    if isinstance(raw, str):
        return ScalarOutput(raw)
    if isinstance(raw, (list, tuple)):
        return ListOutput(tuple(raw))
    if isinstance(raw, dict):
        return KeyedOutput(dict(raw))
    raise _unexpected(raw)


def _has_mesh_extension(candidate: Any) -> bool:
    if not isinstance(candidate, str):
        return False
    return urlparse(candidate).path.lower().endswith(MESH_EXTENSIONS)


def resolve_mesh_url(output: GatewayOutput, _depth: int = 0) -> str:
    """
    Reduce a tagged output to a single mesh URL.

    - ScalarOutput: the string itself
    - ListOutput: first entry with a mesh extension, else the last entry
    - KeyedOutput: first conventional key present, else the first value;
      nested lists/mappings are resolved the same way

    Raises:
        RemoteJobError: If the output does not resolve to a non-empty string
    """
    if _depth > 3:
        raise _unexpected(output)

    if isinstance(output, ScalarOutput):
        candidate: Any = output.value
    elif isinstance(output, ListOutput):
        if not output.items:
            raise RemoteJobError("Invalid model output: empty output list")
        candidate = next(
            (item for item in output.items if _has_mesh_extension(item)),
            output.items[-1],
        )
    elif isinstance(output, KeyedOutput):
        if not output.mapping:
            raise RemoteJobError("Invalid model output: empty output object")
        key = next((k for k in OUTPUT_KEYS if k in output.mapping), None)
        candidate = output.mapping[key] if key else next(iter(output.mapping.values()))
    else:
        raise _unexpected(output)

    if isinstance(candidate, (list, tuple, dict)):
        return resolve_mesh_url(parse_output(candidate), _depth + 1)
    if not isinstance(candidate, str) or not candidate:
        raise _unexpected(candidate)
    return candidate


def normalize_output(raw: Any) -> str:
    """Shortcut for resolve_mesh_url(parse_output(raw))."""
    return resolve_mesh_url(parse_output(raw))


def poll_delays(
    initial: float = POLL_INITIAL_DELAY,
    factor: float = POLL_BACKOFF_FACTOR,
    cap: float = POLL_MAX_DELAY,
) -> Iterator[float]:
    """Yield 1, 1.5, 2.25, ... seconds, capped at `cap`."""
    delay = initial
    while True:
        yield delay
        delay = min(delay * factor, cap)


# ==================== GATEWAYS ====================

@runtime_checkable
class InferenceGateway(Protocol):
    async def generate(self, request: InferenceRequest) -> MeshResult:
        """Run one generation and return the mesh URL."""
        ...

    def check_credentials(self) -> bool:
        """Whether the credentials needed to call the service are configured."""
        ...


class ReplicateGateway:
    """
    Gateway over Replicate's prediction HTTP API.

    mode="sync" asks the API to hold the request open until the prediction
    finishes (falling back to polling if it is still running when the wait
    expires); mode="async" creates the prediction and polls it.
    """

    def __init__(
        self,
        api_token: Optional[str],
        model_version: str,
        api_url: str = "https://api.replicate.com/v1",
        mode: str = "sync",
        wait_seconds: int = 60,
        http: Optional[requests.Session] = None,
        sleep: Sleep = asyncio.sleep,
        poll_max_attempts: int = POLL_MAX_ATTEMPTS,
    ):
        if mode not in ("sync", "async"):
            raise ValueError(f"Unknown inference mode: {mode}")
        self.api_token = api_token
        self.model_version = model_version
        self.api_url = api_url.rstrip("/")
        self.mode = mode
        self.wait_seconds = wait_seconds
        self.http = http or requests.Session()
        self.sleep = sleep
        self.poll_max_attempts = poll_max_attempts

    def check_credentials(self) -> bool:
        return bool(self.api_token)

    def _headers(self, wait: bool = False) -> Dict[str, str]:
        if not self.api_token:
            raise AuthError("Missing REPLICATE_API_TOKEN environment variable")
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        if wait:
            headers["Prefer"] = f"wait={self.wait_seconds}"
        return headers

    def _request(self, method: str, path: str, wait: bool = False, **kwargs) -> Dict[str, Any]:
        headers = self._headers(wait=wait)
        timeout = self.wait_seconds + 30 if wait else 30
        try:
            response = self.http.request(
                method, f"{self.api_url}{path}", headers=headers, timeout=timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ServiceError(f"Inference service unreachable: {str(e)}", cause=e) from e

        _raise_for_status(response)
        return response.json()

    # --- Blocking HTTP calls ---

    def _create_prediction(self, request: InferenceRequest, wait: bool) -> Dict[str, Any]:
        payload = {"version": self.model_version, "input": request.to_model_input()}
        return self._request("POST", "/predictions", wait=wait, json=payload)

    def _get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/predictions/{prediction_id}")

    def _cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/predictions/{prediction_id}/cancel")

    # --- Public async surface ---

    async def create_prediction(self, request: InferenceRequest) -> Dict[str, Any]:
        """Create a prediction without waiting; returns the job handle."""
        prediction = await run_blocking(self._create_prediction, request, False)
        logger.info(f"Created prediction {prediction.get('id')} ({prediction.get('status')})")
        return prediction

    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await run_blocking(self._get_prediction, prediction_id)

    async def cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
        logger.info(f"Cancelling prediction {prediction_id}")
        return await run_blocking(self._cancel_prediction, prediction_id)

    async def _abandon(self, prediction_id: str):
        outcome = await best_effort(
            lambda: self.cancel_prediction(prediction_id), f"Cancel prediction {prediction_id}"
        )
        if not outcome.ok:
            logger.warning(f"Prediction {prediction_id} left running: {outcome.error}")

    async def poll_prediction(self, prediction_id: str) -> Dict[str, Any]:
        """
        Poll a prediction until it reaches a terminal state.

        A prediction that outlives the attempt budget is cancelled before
        the timeout is raised.

        Raises:
            RemoteJobError: If the prediction failed or was canceled
            InferenceTimeoutError: If the attempt budget runs out
        """
        delays = poll_delays()
        for attempt in range(self.poll_max_attempts):
            prediction = await self.get_prediction(prediction_id)
            status = prediction.get("status")

            if status == "succeeded":
                return prediction
            if status in TERMINAL_FAILURES:
                raise RemoteJobError(
                    f"Prediction {status}: {prediction.get('error') or 'Unknown error'}"
                )

            await self.sleep(next(delays))

        await self._abandon(prediction_id)
        raise InferenceTimeoutError(
            f"Prediction timed out after {self.poll_max_attempts} polls"
        )

    async def generate(self, request: InferenceRequest) -> MeshResult:
        """Run one generation in the configured mode and return the mesh URL."""
        logger.info(f"Running image-to-3D model ({self.mode}) on {request.image_url}")
        prediction = await run_blocking(self._create_prediction, request, self.mode == "sync")
        prediction_id = prediction.get("id")
        status = prediction.get("status")

        if status in TERMINAL_FAILURES:
            raise RemoteJobError(f"Prediction {status}: {prediction.get('error') or 'Unknown error'}")
        if status != "succeeded":
            try:
                prediction = await self.poll_prediction(prediction_id)
            except RemoteJobError:
                raise
            except Exception:
                # Polling gave up on a job that may still be running
                await self._abandon(prediction_id)
                raise

        mesh_url = normalize_output(prediction.get("output"))
        logger.info(f"Prediction {prediction_id} produced mesh {mesh_url}")
        return MeshResult(mesh_url=mesh_url, job_id=prediction_id)


def _raise_for_status(response: requests.Response):
    """Translate an HTTP error from the inference service into the error taxonomy."""
    if response.ok:
        return

    try:
        detail = response.json().get("detail") or response.text
    except ValueError:
        detail = response.text

    code = response.status_code
    if code in (401, 403):
        raise AuthError(f"Inference service rejected the API token ({code}): {detail}")
    if code == 429:
        raise RateLimitError(f"Inference service rate limit exceeded: {detail}")
    if code >= 500:
        raise ServiceError(f"Inference service error ({code}): {detail}")
    raise RemoteJobError(f"Inference request rejected ({code}): {detail}")
