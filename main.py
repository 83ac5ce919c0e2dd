#!/usr/bin/env python3
"""
Main entry point for the Chatsetter trigger engine.
Handles command line arguments and starts the FastAPI server.
"""

import argparse
import logging
import uvicorn
from dotenv import load_dotenv

from app.config.settings import settings
from app.core.logging import setup_logging

# Load environment variables
load_dotenv()

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


def main():
    """Main application entry point."""

    # Parse command line arguments
    parser = argparse.ArgumentParser(
        description="Chatsetter trigger engine"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind the server to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to bind the server to (default: {settings.port})"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    args = parser.parse_args()

    # Start the server
    logger.info(f"Starting Chatsetter server on {args.host}:{args.port}")
    uvicorn.run(
        "app.core.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
