#!/usr/bin/env python3
"""Entry point for the SafeGuard accident monitor."""

import argparse
import os
import sys
import threading
import time
import traceback

from dotenv import load_dotenv

from safeguard.config.defaults import DEFAULT_PATHS
from safeguard.incident_orchestrator import IncidentOrchestrator
from safeguard.logging_config import get_logger, setup_logging
from safeguard.services.analysis_gateway import (
    AnalysisGateway, AnalysisProviderConfig, GeminiAnalysisProvider
)
from safeguard.services.notification_gateway import (
    NotificationGateway, TwilioConfig, TwilioNotificationProvider
)
from safeguard.services.sample_source import CameraSampleSource, SensorFeedSampleSource
from safeguard.session_config import SessionConfigManager
from safeguard.web.app import SafeguardWebApp


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="SafeGuard accident monitor")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--video", help="Video file to monitor (loops at the end)")
    source.add_argument("--camera", type=int, default=0, help="Camera index (default: 0)")
    source.add_argument("--sensor", action="store_true",
                        help="Monitor motion readings pushed to POST /api/sensor")
    parser.add_argument("--config", default=DEFAULT_PATHS["config_file"],
                        help="Session setup file (JSON, read-only)")
    parser.add_argument("--host", default="0.0.0.0", help="Web interface host")
    parser.add_argument("--port", type=int, default=5000, help="Web interface port")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-dir", default=DEFAULT_PATHS["logs_dir"])
    return parser.parse_args(argv)


def build_orchestrator(args) -> IncidentOrchestrator:
    """Wire adapters from command line options and environment variables."""
    if args.sensor:
        sample_source = SensorFeedSampleSource()
    elif args.video:
        sample_source = CameraSampleSource(device=args.video)
    else:
        sample_source = CameraSampleSource(device=args.camera)

    config_manager = SessionConfigManager(args.config if os.path.exists(args.config) else None)

    return IncidentOrchestrator(
        config_manager=config_manager,
        sample_source=sample_source,
        analysis_gateway=AnalysisGateway(GeminiAnalysisProvider(AnalysisProviderConfig.from_env())),
        notification_gateway=NotificationGateway(TwilioNotificationProvider(TwilioConfig.from_env()))
    )


def main(argv=None):
    """Main entry point for the monitor."""
    args = parse_args(argv)
    load_dotenv()
    setup_logging(args.log_level, args.log_dir)

    logger = get_logger("start_monitoring")
    logger.info("Starting SafeGuard accident monitor")
    logger.info(f"Python version: {sys.version}")

    try:
        orchestrator = build_orchestrator(args)

        if not os.getenv("GOOGLE_API_KEY"):
            logger.warning("GOOGLE_API_KEY is not set; analysis requests will fail")
        if not os.getenv("TWILIO_ACCOUNT_SID") or not os.getenv("TWILIO_AUTH_TOKEN"):
            logger.warning("Twilio credentials are not set; alerts will fail")

        if not orchestrator.start():
            logger.error("Failed to start incident orchestrator")
            return 1

        web_app = SafeguardWebApp(orchestrator)

        def start_web_server():
            try:
                web_app.run(host=args.host, port=args.port)
            except Exception as e:
                logger.error(f"Web server failed to start: {e}")
                traceback.print_exc()

        web_thread = threading.Thread(target=start_web_server, daemon=True)
        web_thread.start()
        logger.info("Web server thread started")

        # Keep the main thread running
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
        finally:
            orchestrator.stop()
            logger.info("Incident orchestrator stopped")

        return 0

    except Exception as e:
        logger.error(f"Monitor failed: {e}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
