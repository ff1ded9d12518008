"""Transport endpoints shared by the HTTP server and the scheme handler.

Each endpoint normalizes its input into a CaptureBatch and hands it to the
collector's merge step.
"""

import base64
import json
from typing import Any

from chat_capture.collector.ingest import IngestionCollector, Transport
from chat_capture.logging import get_logger
from chat_capture.models import CaptureBatch, CapturedMessage, PayloadError, Source
from chat_capture.session import SchemeRequest, SchemeResponse

logger = get_logger("collector.endpoints")

# 1x1 transparent GIF returned for every beacon
TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def handle_capture_body(
    collector: IngestionCollector,
    body: bytes,
    transport: Transport,
) -> tuple[int, dict[str, Any]]:
    """Process a POST /capture body.

    Returns:
        Tuple of (HTTP status, JSON response object)
    """
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Rejected capture body: transport=%s error=%s", transport.value, e)
        return 400, {"error": f"invalid JSON: {e}"}

    try:
        collector.ingest_payload(payload, transport)
    except PayloadError as e:
        logger.warning("Rejected capture payload: transport=%s error=%s", transport.value, e)
        return 400, {"error": str(e)}

    return 200, {"status": "ok"}


def parse_beacon(data: str | None) -> CaptureBatch | None:
    """Decode the ``d`` parameter of a beacon request.

    The parameter is a JSON object ``{s, r, c, t}``: service id, role,
    content and capture timestamp. Returns None for anything malformed.
    """
    if not data:
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    service_id = payload.get("s")
    if not isinstance(service_id, str) or not service_id:
        return None

    try:
        message = CapturedMessage.from_payload(
            {
                "role": payload.get("r"),
                "content": payload.get("c"),
                "timestamp": payload.get("t", 0),
                "source": Source.BEACON.value,
            },
            Source.BEACON,
        )
    except PayloadError:
        return None

    return CaptureBatch(service_id=service_id, messages=[message])


def handle_beacon(collector: IngestionCollector, data: str | None) -> None:
    """Merge a beacon; malformed beacons are dropped silently.

    The sender never sees the outcome, so merge failures are only logged.
    """
    batch = parse_beacon(data)
    if batch is None:
        logger.debug("Ignored malformed beacon")
        return
    try:
        collector.ingest(batch, Transport.BEACON)
    except Exception:
        logger.exception("Beacon merge failed: service=%s", batch.service_id)


def handle_scheme_request(collector: IngestionCollector, request: SchemeRequest) -> SchemeResponse:
    """Handler the host registers for its private URI scheme."""
    if request.path.rstrip("/") != "/capture":
        return SchemeResponse(status=404, body=b'{"error":"not found"}')
    if request.method.upper() != "POST":
        return SchemeResponse(status=405, body=b'{"error":"method not allowed"}')

    status, response = handle_capture_body(collector, request.body, Transport.SCHEME)
    return SchemeResponse(status=status, body=json.dumps(response).encode())
