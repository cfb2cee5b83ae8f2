"""Merchant-side receiver used to exercise outbound payment-link webhooks over real HTTP."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Self

from src.dispatcher.signer import SIGNATURE_HEADER
from src.utils.crypto import verify_signature


class _MerchantHandler(BaseHTTPRequestHandler):

    def do_POST(self):
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length)
        config = self.server.config  # type: ignore[attr-defined]

        if config["response_delay"] > 0:
            time.sleep(config["response_delay"])

        try:
            payload = json.loads(body)
        except ValueError:
            self._reply(400, {"error": "invalid JSON"})
            return

        if config["signature_secret"]:
            sig = self.headers.get(SIGNATURE_HEADER, "")
            if not verify_signature(body, config["signature_secret"], sig):
                self._reply(401, {"error": "invalid signature"})
                return

        with config["lock"]:
            config["received_events"].append({
                "event_id": self.headers.get("X-Event-ID", ""),
                "payload": payload,
                "body": body,
                "headers": dict(self.headers),
            })
            # Scripted codes are consumed first, then the fixed code applies.
            code = config["scripted_codes"].pop(0) if config["scripted_codes"] else config["response_code"]

        self._reply(code, {"status": "ok"} if 200 <= code < 300 else {"error": "merchant failure"})

    def _reply(self, code: int, payload: dict) -> None:
        data = json.dumps(payload).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


class MerchantWebhookServer:
    """Configurable HTTP server standing in for a payment-link subscriber."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0, secret: str | None = None):
        self._host = host
        self._port = port
        self._config = {
            "response_code": 200,
            "scripted_codes": [],
            "response_delay": 0,
            "signature_secret": secret,
            "received_events": [],
            "lock": threading.Lock(),
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def set_response_code(self, code: int) -> Self:
        self._config["response_code"] = code
        return self

    def script_response_codes(self, *codes: int) -> Self:
        with self._config["lock"]:
            self._config["scripted_codes"] = list(codes)
        return self

    def set_response_delay(self, seconds: float) -> Self:
        self._config["response_delay"] = seconds
        return self

    def enable_signature_verification(self, secret: str) -> Self:
        self._config["signature_secret"] = secret
        return self

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _MerchantHandler)
        self._server.config = self._config  # type: ignore[attr-defined]
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

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
        return f"http://{self._host}:{self._port}/webhook"

    @property
    def port(self) -> int:
        return self._port

    def get_received_events(self) -> list[dict]:
        with self._config["lock"]:
            return list(self._config["received_events"])

    def get_processed_count(self) -> int:
        with self._config["lock"]:
            return len(self._config["received_events"])

    def clear_events(self) -> None:
        with self._config["lock"]:
            self._config["received_events"].clear()
