"""Main application module for the listings aggregator."""
from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from api_routes import register_routes
from listings import get_service
from listings.service import ListingsService

logger = logging.getLogger("listings")

# Load environment variables before settings are read
load_dotenv(os.getenv("LISTINGS_DOTENV", ".env"))


def configure_logging(level: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler()]
    log_file = os.getenv("LISTINGS_LOG_FILE")
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=(level or os.getenv("LISTINGS_LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def create_app(service: Optional[ListingsService] = None) -> Flask:
    """Build the Flask app around a ListingsService (the process-wide one by default)."""
    app = Flask(__name__)
    CORS(app)
    resolved = service or get_service()
    app.extensions["listings_service"] = resolved
    register_routes(app, resolved)
    logger.info(
        "Listings app ready (credentials configured: %s, distributed store: %s)",
        resolved.settings.has_credentials,
        bool(resolved.settings.redis_url),
    )
    return app
