"""Ludo.ai spritesheet API integration."""

import base64
import mimetypes
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import structlog

from spritebatch.config import settings

logger = structlog.get_logger()

ANIMATE_KEYS = (
    "motion_prompt", "initial_image", "final_image", "loop", "crop",
    "frames", "frame_size", "margin_ratio", "margin_ratio_mode",
    "pixel_art_filter", "image_type", "model", "duration",
    "augment_prompt", "gif", "individual_frames", "spritesheet_with_background",
)
POSE_KEYS = ("image", "pose", "description", "n", "augment_prompt")
TRANSFER_MOTION_KEYS = (
    "image", "video", "preset_id", "direction", "perspective",
    "frames", "frame_size", "loop", "crop", "pixel_art_filter",
    "margin_ratio", "margin_ratio_mode", "gif", "individual_frames",
    "spritesheet_with_background",
)


class OperationError(Exception):
    """Raised when the animate operation does not succeed."""


class LudoAPIError(OperationError):
    """Non-success response from the Ludo.ai API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _filter_body(params: dict[str, Any], allowed_keys: tuple[str, ...]) -> dict[str, Any]:
    return {
        key: params[key]
        for key in allowed_keys
        if params.get(key) is not None and params.get(key) != ""
    }


def is_url(text: str) -> bool:
    """Check whether text is an absolute URL."""
    parsed = urlparse(text)
    return bool(parsed.scheme and parsed.netloc)


def file_to_data_uri(path: str) -> str:
    """Encode a local image file as a base64 data URI.

    Args:
        path: Path to the image file

    Returns:
        data URI string (e.g., 'data:image/png;base64,...')
    """
    file_path = Path(path)
    mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    encoded = base64.b64encode(file_path.read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class LudoClient:
    """Async client for the Ludo.ai sprite endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Ludo.ai client.

        Args:
            api_key: API key (uses settings if not provided)
            base_url: API base URL (uses settings if not provided)
            timeout: Request timeout in seconds (uses settings if not provided)
            transport: Optional httpx transport, mainly for tests
        """
        self.api_key = api_key or settings.ludo_api_key
        self.base_url = (base_url or settings.ludo_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self._transport = transport

        logger.info(
            "ludo_client_initialized",
            base_url=self.base_url,
            has_api_key=bool(self.api_key),
            source="client",
        )

    async def _request(
        self, method: str, endpoint: str, body: Optional[dict] = None
    ) -> Any:
        """Send a request and decode the JSON response.

        Raises:
            LudoAPIError: If the API answers with a non-2xx status
            httpx.HTTPError: On transport failures
        """
        headers = {
            "Authorization": f"ApiKey {self.api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=headers,
                json=body,
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            error_msg = None
            if isinstance(data, dict):
                error_msg = data.get("message") or data.get("error")
            error_msg = error_msg or f"API Error ({response.status_code})"

            logger.error(
                "ludo_request_failed",
                endpoint=endpoint,
                status_code=response.status_code,
                error=error_msg,
                source="client",
            )
            raise LudoAPIError(str(error_msg), status_code=response.status_code)

        logger.debug(
            "ludo_request_succeeded",
            endpoint=endpoint,
            status_code=response.status_code,
            source="client",
        )

        return data

    async def animate_sprite(self, params: dict[str, Any]) -> dict[str, Any]:
        """Generate an animated spritesheet from a sprite image.

        Args:
            params: Request parameters; `motion_prompt` and `initial_image`
                are required, the rest are optional

        Returns:
            Result dict with `spritesheet_url` and, when requested,
            `individual_frame_urls`, `video_url`, `gif_url`
        """
        body = _filter_body(params, ANIMATE_KEYS)

        logger.info(
            "animating_sprite",
            motion_prompt=body.get("motion_prompt"),
            frames=body.get("frames"),
            model=body.get("model"),
            source="client",
        )

        return await self._request("POST", "/assets/sprite/animate", body)

    async def generate_pose(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Generate new poses for an existing sprite."""
        return await self._request(
            "POST", "/assets/sprite/pose", _filter_body(params, POSE_KEYS)
        )

    async def transfer_motion(self, params: dict[str, Any]) -> dict[str, Any]:
        """Transfer motion from a video or preset onto a static sprite."""
        return await self._request(
            "POST",
            "/assets/sprite/transfer-motion",
            _filter_body(params, TRANSFER_MOTION_KEYS),
        )

    async def list_animation_presets(self) -> dict[str, Any]:
        """Fetch available animations, perspectives and directions."""
        return await self._request("GET", "/assets/sprite/animation-presets")
