"""Loopback HTTP endpoints for pages that cannot reach the host directly."""

from flask import Flask, Response, jsonify, request

from chat_capture.collector.endpoints import (
    TRANSPARENT_GIF,
    handle_beacon,
    handle_capture_body,
)
from chat_capture.collector.ingest import IngestionCollector, Transport


def create_app(collector: IngestionCollector) -> Flask:
    """Flask application factory."""
    app = Flask(__name__)

    # Store the collector on app for access in tests
    app.config["collector"] = collector

    @app.after_request
    def add_cors_headers(response: Response) -> Response:
        # Hosted pages post from their own origins
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "persisted": collector.index.count()})

    @app.route("/capture", methods=["POST", "OPTIONS"])
    def capture():
        if request.method == "OPTIONS":
            return "", 204
        status, body = handle_capture_body(collector, request.get_data(), Transport.HTTP)
        return jsonify(body), status

    @app.route("/beacon")
    def beacon():
        handle_beacon(collector, request.args.get("d"))
        response = Response(TRANSPARENT_GIF, mimetype="image/gif")
        response.headers["Cache-Control"] = "no-store"
        return response

    return app
