"""CLI harness for the landmark voice guide."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .bridge import LandmarkDetectionBridge
from .config import AppConfig
from .exceptions import VisionClientError
from .pipeline import ConversationOrchestrator
from .services.chat_botpress import BotpressChatClient
from .services.speech_deepgram import DeepgramSpeechManager
from .services.vision_roboflow import RoboflowVisionClient

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass
class Components:
    speech: DeepgramSpeechManager
    orchestrator: ConversationOrchestrator
    bridge: LandmarkDetectionBridge
    vision: RoboflowVisionClient


def build_components(config: AppConfig) -> Components:
    """Wire up the guide with the Botpress, Deepgram and Roboflow backends."""
    if not config.webhook_id:
        raise RuntimeError("GUIDE_WEBHOOK_ID must be set to reach the chat backend.")
    if not config.deepgram_api_key:
        raise RuntimeError("GUIDE_DEEPGRAM_API_KEY must be set for speech.")

    chat_client = BotpressChatClient(
        config.chat_url,
        user_key=config.user_key,
        timeout=config.request_timeout,
        assistant_prefix=config.assistant_user_prefix,
    )
    speech = DeepgramSpeechManager.from_config(config)
    orchestrator = ConversationOrchestrator.from_config(config, chat_client=chat_client, speech=speech)
    bridge = LandmarkDetectionBridge(
        orchestrator,
        cooldown_seconds=config.detection_cooldown,
        test_landmarks=config.test_landmarks,
    )
    vision = RoboflowVisionClient(url=config.vision_url, api_key=config.vision_api_key)
    return Components(speech=speech, orchestrator=orchestrator, bridge=bridge, vision=vision)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the landmark voice guide (CLI harness).")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--landmark",
        action="append",
        default=[],
        help="Landmark label to start a conversation about (repeatable).",
    )
    parser.add_argument(
        "--image",
        type=Path,
        help="Run landmark detection on this image and start a conversation about the result.",
    )
    parser.add_argument(
        "--scenario",
        type=int,
        choices=[1, 2, 3, 4],
        help="Simulate a detection: 1 cathedral, 2 bridge, 3 both, 4 GUIDE_TEST_LANDMARKS.",
    )
    return parser.parse_args(argv)


async def _detect_from_image(vision: RoboflowVisionClient, image_path: Path) -> Optional[str]:
    print(f"[VISION] Analyzing {image_path}...")
    try:
        image = image_path.read_bytes()
        label = await asyncio.to_thread(vision.detect_landmark, image)
    except (OSError, ValueError, VisionClientError) as exc:
        logger.error("Landmark detection failed: %s", exc)
        return None
    if label is None:
        print("[VISION] No landmark detected.")
    else:
        print(f"[VISION] Detected: {label}")
    return label


async def _run(components: Components, args: argparse.Namespace) -> None:
    orchestrator = components.orchestrator
    bridge = components.bridge

    if not orchestrator.start() or not bridge.start():
        raise RuntimeError("Guide components failed to start.")

    orchestrator.conversation_started.connect(lambda landmarks: print(f"[GUIDE] Tour started: {', '.join(landmarks)}"))
    orchestrator.conversation_ended.connect(lambda: print("[GUIDE] Tour ended. Waiting for the next landmark..."))
    orchestrator.bot_spoke.connect(lambda text: print(f"[BOT] {text}"))
    orchestrator.user_spoke.connect(lambda text: print(f"[YOU] {text}"))

    landmarks: List[str] = list(args.landmark)
    if args.image is not None:
        label = await _detect_from_image(components.vision, args.image)
        if label:
            landmarks.append(label)

    if landmarks:
        bridge.on_landmarks_detected(landmarks)
    elif args.scenario is not None:
        bridge.simulate_detection(args.scenario)
    else:
        print("[GUIDE] No landmark given; use --landmark, --image or --scenario.")

    print("[GUIDE] Running. Press Ctrl+C to exit.")
    try:
        while True:
            await asyncio.sleep(1.0)
    finally:
        bridge.shutdown()
        orchestrator.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    config = AppConfig.from_env()
    components = build_components(config)
    try:
        asyncio.run(_run(components, args))
    except KeyboardInterrupt:
        print("\n[GUIDE] Shutting down...")


if __name__ == "__main__":
    main()
