"""API routes for the listings aggregator."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import jsonify, request

from listings.errors import AggregateError, ClientRateLimited, ListingsError, UpstreamError, ValidationError
from listings.models import RateLimitResult, post_to_dict
from listings.normalizer import is_allowed_media_host
from listings.rate_limiter import client_identifier
from listings.service import ListingsService
from listings.validation import parse_aggregate_query, parse_listing_query

logger = logging.getLogger("listings.api")


def _serialize_post(post) -> Dict[str, Any]:
    payload = post_to_dict(post)
    payload["trustedHosts"] = all(is_allowed_media_host(url) for url in post.media_urls)
    return payload


def error_response(exc: ListingsError):
    """Map a pipeline error to ``({error, details?}, status)``."""
    body: Dict[str, Any] = {"error": str(exc)}
    status = exc.http_status
    if isinstance(exc, ValidationError):
        body["details"] = exc.details
    elif isinstance(exc, ClientRateLimited):
        body["resetAt"] = int(exc.reset_at * 1000)
        body["remaining"] = exc.remaining
    elif isinstance(exc, AggregateError):
        body["details"] = exc.channel_details()
    elif isinstance(exc, UpstreamError) and exc.status == 404:
        status = 404
    return jsonify(body), status


def register_routes(app, service: ListingsService):
    """Register all API routes with the Flask app.

    Args:
        app: Flask app instance.
        service: Shared ListingsService the routes delegate to.
    """

    def _apply_general_limit() -> RateLimitResult:
        identity = client_identifier(request.headers, request.remote_addr)
        decision = service.rate_limiter.check(identity, service.settings.general_rate)
        if not decision.allowed:
            logger.info("General rate limit tripped for %s", identity)
            raise ClientRateLimited(decision.reset_at, decision.remaining, identity)
        return decision

    def _with_limit_headers(response, decision: Optional[RateLimitResult]):
        if decision is not None:
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at * 1000))
        return response

    @app.errorhandler(ListingsError)
    def handle_listings_error(exc: ListingsError):
        if exc.http_status >= 500:
            logger.error("Request %s failed: %s", request.path, exc)
        else:
            logger.info("Request %s rejected: %s", request.path, exc)
        return error_response(exc)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.route("/status")
    def status():
        try:
            return jsonify(service.status())
        except Exception as exc:
            logger.error("Status snapshot failed: %s", exc, exc_info=True)
            return jsonify({"status": "error", "error": "Failed to build status"}), 500

    @app.route("/listings")
    def listings():
        params = parse_listing_query(request.args.to_dict())
        decision = _apply_general_limit()
        identity = client_identifier(request.headers, request.remote_addr)
        logger.info("Listing request %s/%s cursor=%s", params.channel, params.sort.value, params.cursor)

        result = service.get_listing(params.to_query(), identity=identity)
        response = jsonify(
            {
                "posts": [_serialize_post(post) for post in result.posts],
                "cursor": result.next_cursor,
                "cached": result.from_cache,
            }
        )
        return _with_limit_headers(response, decision)

    @app.route("/listings/aggregate")
    def listings_aggregate():
        params = parse_aggregate_query(request.args.to_dict(), max_channels=service.settings.max_channels)
        decision = _apply_general_limit()
        identity = client_identifier(request.headers, request.remote_addr)
        logger.info("Aggregate request %s (%s)", ",".join(params.channels), params.sort.value)

        page = service.aggregate(
            params.channels,
            params.sort,
            params.time_window,
            params.cursors,
            page_size=params.limit,
            identity=identity,
        )
        response = jsonify(
            {
                "posts": [_serialize_post(post) for post in page.posts],
                "cursors": page.cursors,
                "anyHasMore": page.any_has_more,
                "state": page.state.value,
                "warnings": page.warnings,
                "failedChannels": page.failed_channels,
                "generatedAt": page.generated_at.isoformat(),
            }
        )
        return _with_limit_headers(response, decision)
