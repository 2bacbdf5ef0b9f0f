"""
Same-origin image proxy for ProxyPrint.

GET /image-proxy?url=<absolute image URL> fetches an allowlisted remote image
and returns its bytes with permissive CORS headers, so tools that can only
reach their own origin can still get card art. OPTIONS answers preflights.

Run the development server with:
    python proxy_server.py
"""

import logging
import time
from typing import Optional
from urllib.parse import urlsplit

import requests
from flask import Blueprint, Flask, Response, current_app, jsonify, request

import config
from logging_config import get_logger, setup_logging
from web_utils import is_absolute_http_url, is_success_status, resolve_content_type

logger = get_logger(__name__)

image_proxy_bp = Blueprint("image_proxy", __name__)


def is_host_allowed(host: Optional[str], allowed_hosts) -> bool:
    """Exact match or any subdomain of an allowed host."""
    if not host:
        return False
    host = host.lower().rstrip(".")
    for allowed in allowed_hosts:
        allowed = allowed.lower()
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


def _with_cors(response: Response) -> Response:
    for header, value in config.CORS_HEADERS.items():
        response.headers[header] = value
    return response


def _error(message: str, status: int) -> Response:
    response = jsonify({"error": message})
    response.status_code = status
    return _with_cors(response)


def _upstream_get(url: str, timeout: float) -> requests.Response:
    """Fetch without cookies, auth or environment proxies."""
    with requests.Session() as session:
        session.trust_env = False
        return session.get(url, headers={"Accept": config.IMAGE_ACCEPT_HEADER},
                           timeout=timeout, allow_redirects=True)


@image_proxy_bp.route(config.IMAGE_PROXY_PATH, methods=["GET", "OPTIONS"])
def image_proxy():
    if request.method == "OPTIONS":
        return _with_cors(Response(status=200))
    started = time.monotonic()
    target = request.args.get("url", "").strip()
    response = _proxy_response(target)
    elapsed_ms = (time.monotonic() - started) * 1000
    logger.info(f"image-proxy {response.status_code} {target[:100]!r} in {elapsed_ms:.0f}ms")
    return response


def _proxy_response(target: str) -> Response:
    if not target:
        return _error("URL parameter is required", 400)
    if not is_absolute_http_url(target):
        return _error("Invalid URL format", 400)
    if not is_host_allowed(urlsplit(target).hostname, current_app.config["ALLOWED_IMAGE_HOSTS"]):
        logger.warning(f"Rejected image host: {urlsplit(target).hostname}")
        return _error("Domain not allowed", 403)

    try:
        upstream = _upstream_get(target, current_app.config["UPSTREAM_TIMEOUT_SECONDS"])
    except requests.exceptions.Timeout:
        return _error("Request timeout", 504)
    except Exception as e:
        logger.error(f"Upstream fetch failed for {target[:100]}: {e}")
        return _error(str(e) or "Internal server error", 500)

    if not is_success_status(upstream.status_code):
        return _error(f"Failed to fetch image: {upstream.status_code} {upstream.reason or ''}".strip(),
                      upstream.status_code)

    data = upstream.content
    if len(data) < current_app.config["MIN_IMAGE_BYTES"]:
        return _error("Image data too small", 400)

    response = Response(data, status=200)
    response.headers["Content-Type"] = resolve_content_type(upstream.headers.get("Content-Type"), data)
    response.headers["Content-Length"] = str(len(data))
    response.headers["Cache-Control"] = config.PROXY_CACHE_CONTROL
    response.headers["X-Content-Type-Options"] = "nosniff"
    return _with_cors(response)


def create_app(config_object=None) -> Flask:
    """
    Application factory.

    Args:
        config_object: Config class or import path (default config.ProxyServerConfig)
    """
    app = Flask(__name__)
    app.config.from_object(config_object or "config.ProxyServerConfig")

    if not app.config.get("TESTING"):
        log_level = logging.DEBUG if app.config.get("DEBUG") else logging.INFO
        root_logger = setup_logging(log_level=log_level)
        app.logger.handlers = root_logger.handlers
        app.logger.setLevel(log_level)

    app.register_blueprint(image_proxy_bp)
    logger.info(f"Image proxy ready, {len(app.config['ALLOWED_IMAGE_HOSTS'])} allowed host(s)")
    return app


def main():
    create_app().run(host="127.0.0.1", port=5000, debug=config.DEBUG)


if __name__ == "__main__":
    main()
