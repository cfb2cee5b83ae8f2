import json
import logging
import threading
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

from src.errors import AuthenticationError, ValidationError, WebhookError
from src.models.webhook import DepositEvent
from src.processor.deposit import DepositAcknowledgement
from src.utils.crypto import check_shared_secret

logger = logging.getLogger(__name__)

DEPOSIT_PATHS = frozenset({"/webhooks/deposit", "/v1/webhooks/deposit"})


class _DepositWebhookHandler(BaseHTTPRequestHandler):
    """HTTP request handler for provider deposit notifications."""

    def do_POST(self):
        path = urlsplit(self.path).path.rstrip("/")
        try:
            content_length = int(self.headers.get("Content-Length") or 0)
            if content_length < 0:
                raise ValueError(content_length)
        except ValueError:
            # The body cannot be framed, so the connection is not reused.
            self.close_connection = True
            self._send_json(400, ValidationError("invalid Content-Length").to_dict())
            return
        body = self.rfile.read(content_length)

        if path not in DEPOSIT_PATHS:
            self._send_json(404, {"error": "not found"})
            return

        config = self.server.config  # type: ignore[attr-defined]

        if config["secret"] and not check_shared_secret(self.headers.get("Authorization"), config["secret"]):
            error = AuthenticationError("invalid or missing provider credentials")
            logger.warning("Rejected deposit webhook from %s: %s", self.client_address[0], error.message)
            self._send_json(401, error.to_dict())
            return

        try:
            data = json.loads(body)
        except ValueError:
            self._send_json(400, ValidationError("invalid JSON").to_dict())
            return

        try:
            event = DepositEvent.from_payload(data)
        except ValidationError as exc:
            logger.info("Rejected malformed deposit webhook: %s", exc.message)
            self._send_json(400, exc.to_dict())
            return

        try:
            ack = config["processor"].process_deposit_webhook(event)
        except WebhookError as exc:
            # Acknowledged so the provider stops retrying; already audited.
            ack = DepositAcknowledgement.from_error(event, exc)
        except Exception:
            logger.exception("Deposit webhook for qrId %s failed", event.qr_id)
            self._send_json(500, {"error": "internal error"})
            return

        self._send_json(200, {"status": "ok", "result": ack.to_dict()})

    def do_GET(self):
        parts = urlsplit(self.path)
        path = parts.path.rstrip("/")
        config = self.server.config  # type: ignore[attr-defined]

        if path == "/health":
            self._send_json(200, {"status": "ok"})
            return

        if path == "/webhooks/stats":
            query = parse_qs(parts.query)
            try:
                start = _parse_time(query.get("start"))
                end = _parse_time(query.get("end"))
            except ValueError:
                self._send_json(400, ValidationError("start/end must be ISO 8601").to_dict())
                return
            self._send_json(200, config["audit"].stats(start, end))
            return

        self._send_json(404, {"error": "not found"})

    def _send_json(self, code: int, payload: dict) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.client_address[0], format % args)


def _parse_time(values: list[str] | None) -> datetime | None:
    if not values:
        return None
    parsed = datetime.fromisoformat(values[0].replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError("timezone required")
    return parsed


class DepositWebhookServer:
    """Inbound endpoint the settlement provider posts deposit events to."""

    def __init__(self, processor, audit, host: str = "127.0.0.1", port: int = 0, secret: str | None = None):
        self._host = host
        self._port = port
        self._config = {
            "processor": processor,
            "audit": audit,
            "secret": secret,
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _DepositWebhookHandler)
        self._server.config = self._config  # type: ignore[attr-defined]
        # Actual port when bound to 0
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("Deposit webhook endpoint listening on %s:%d", self._host, self._port)

    def serve_forever(self) -> None:
        """Blocking variant of ``start`` for the command-line entry point."""
        server = ThreadingHTTPServer((self._host, self._port), _DepositWebhookHandler)
        server.config = self._config  # type: ignore[attr-defined]
        self._server = server
        self._port = server.server_address[1]
        logger.info("Deposit webhook endpoint listening on %s:%d", self._host, self._port)
        try:
            server.serve_forever()
        finally:
            server.server_close()
            self._server = None

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/webhooks/deposit"

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self._port}"

    @property
    def port(self) -> int:
        return self._port
