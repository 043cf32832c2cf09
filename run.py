"""
Run script for starting the callbridge server.

Twilio reaches the server through the public host configured in SERVER; the
host and port given here are the local bind address.

Usage:
    python run.py [--port PORT] [--host HOST] [--log-level LEVEL]
"""

import argparse
import os

import uvicorn

from callbridge.config.logging_config import configure_logging
from callbridge.config.settings import settings

# Configure logging
logger = configure_logging()


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Start the callbridge server")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help="Port to run the server on (default: 8000 or PORT env var)",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help="Host to bind the server to (default: 0.0.0.0 or HOST env var)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO or LOG_LEVEL env var)",
    )
    return parser.parse_args()


def main():
    args = parse_args()

    if settings.voice_backend == "composed":
        missing = [
            name
            for name, value in (
                ("DEEPGRAM_API_KEY", settings.deepgram_api_key),
                ("LLM_API_KEY", settings.llm_api_key),
                ("ELEVENLABS_API_KEY", settings.elevenlabs_api_key),
            )
            if not value
        ]
    else:
        missing = [
            name
            for name, value in (
                ("ELEVENLABS_API_KEY", settings.elevenlabs_api_key),
                ("ELEVENLABS_AGENT_ID", settings.elevenlabs_agent_id),
            )
            if not value
        ]
    if missing:
        # Calls still connect; every reply falls back to the apology
        logger.warning(f"Voice backend '{settings.voice_backend}' is missing: {', '.join(missing)}")

    logger.info(f"Starting server on http://{args.host}:{args.port}")
    logger.info(f"Public media stream URL: {settings.stream_url}")

    uvicorn.run(
        "callbridge.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        http="h11",
        access_log=False,
        reload=os.getenv("ENV", "production").lower() == "development",
    )


if __name__ == "__main__":
    main()
