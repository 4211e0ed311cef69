"""Roboflow workflow adapter for landmark detection."""

from __future__ import annotations

import base64
import json
import logging
import ssl
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from ..exceptions import VisionClientError
from ..models import Detection

logger = logging.getLogger(__name__)


class RoboflowVisionClient:
    """
    Sends an encoded image to a Roboflow workflow and returns its detections.

    Args:
        url: Workflow inference URL.
        api_key: Roboflow API key (sent in the request body).
        timeout: HTTP timeout in seconds.
        ssl_context: Optional SSL context for HTTPS.

    Expected API format:
        POST <workflow url>
        Body: {"api_key": "...", "inputs": {"image": {"type": "base64", "value": "..."}}}

        Response: {"outputs": [{"predictions": {"predictions": [
            {"class": "cologne_cathedral", "confidence": 0.93, "x": .., "y": .., ...}
        ]}}]}
    """

    def __init__(
        self,
        *,
        url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._ssl_context = ssl_context

    def detect(self, image: bytes) -> List[Detection]:
        if not image:
            raise ValueError("No image data provided for detection.")

        payload = {
            "api_key": self._api_key,
            "inputs": {"image": {"type": "base64", "value": base64.b64encode(image).decode("ascii")}},
        }
        request = urllib.request.Request(
            self._url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        logger.info("Sending image to Roboflow (%d bytes)...", len(image))
        try:
            with urllib.request.urlopen(request, timeout=self._timeout, context=self._ssl_context) as response:  # type: ignore[arg-type]
                body = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise VisionClientError(f"Roboflow request failed ({exc.code}): {detail}") from exc
        except urllib.error.URLError as exc:
            raise VisionClientError(f"Roboflow request could not reach the server: {exc.reason}") from exc

        try:
            result = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise VisionClientError("Roboflow response was not valid JSON") from exc

        detections = parse_detections(result)
        logger.debug("Roboflow returned %d detection(s)", len(detections))
        return detections

    def detect_landmark(self, image: bytes) -> Optional[str]:
        """Return the label of the first (highest-priority) detection, if any."""
        detections = self.detect(image)
        if not detections:
            return None
        first = detections[0]
        logger.info(
            "Detected object: %s (confidence %.2f) at (%.0f, %.0f)",
            first.label,
            first.confidence,
            first.x,
            first.y,
        )
        return first.label


def parse_detections(result: Dict[str, Any]) -> List[Detection]:
    """Read ``outputs[0].predictions.predictions`` into :class:`Detection` objects."""
    outputs = result.get("outputs") if isinstance(result, dict) else None
    if not isinstance(outputs, list) or not outputs or not isinstance(outputs[0], dict):
        return []
    predictions = outputs[0].get("predictions")
    if isinstance(predictions, dict):
        predictions = predictions.get("predictions")
    if not isinstance(predictions, list):
        return []

    detections: List[Detection] = []
    for item in predictions:
        if not isinstance(item, dict) or not item.get("class"):
            continue
        detections.append(
            Detection(
                label=str(item["class"]),
                confidence=float(item.get("confidence") or 0.0),
                x=float(item.get("x") or 0.0),
                y=float(item.get("y") or 0.0),
                width=float(item.get("width") or 0.0),
                height=float(item.get("height") or 0.0),
                class_id=item.get("class_id"),
                detection_id=item.get("detection_id"),
            )
        )
    return detections
