#
# conftest.py - Sentinel Tools: pytest configuration file
# Copyright DeGirum Corp. 2025
#
# Contains common pytest configuration and common test fixtures
#
import sys, os, tempfile, pytest, pathlib, threading
import socketserver
import http.server

# add current directory to sys.path to debug tests locally without package installation
sys.path.insert(0, os.getcwd())

import sentinel_tools
import logging


def pytest_addoption(parser):
    """Add custom command line options for pytest"""

    parser.addoption(
        "--loglevel",
        action="store",
        default=None,
        help="Set log level (e.g. DEBUG, INFO, WARNING)",
    )


def pytest_configure(config):
    """Configure pytest with custom options"""

    loglevel = config.getoption("--loglevel")
    if loglevel:
        sentinel_tools.logger_add_handler(
            level=getattr(logging, loglevel.upper(), logging.ERROR)
        )


@pytest.fixture
def temp_dir():
    """Temporary directory fixture with cleanup"""
    with tempfile.TemporaryDirectory() as directory:
        yield pathlib.Path(directory)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove SENTINEL_* environment variables so tests see configuration defaults"""
    for var in list(os.environ):
        if var.startswith("SENTINEL_"):
            monkeypatch.delenv(var)


class WebhookHandler(http.server.BaseHTTPRequestHandler):
    """HTTP request handler recording webhook requests.

    Responds with `status_codes` popped from the front of the list, or 200 when the list is empty.
    """

    received: list = []
    status_codes: list = []

    def do_POST(self):
        content_length = int(self.headers["Content-Length"])
        body = self.rfile.read(content_length)
        WebhookHandler.received.append(
            {
                "path": self.path,
                "signature": self.headers.get("X-Signature"),
                "content_type": self.headers.get("Content-Type"),
                "body": body,
            }
        )
        status = WebhookHandler.status_codes.pop(0) if WebhookHandler.status_codes else 200
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(b'{"status": "ok"}')

    def log_message(self, format, *args):
        pass  # Suppress server logging


@pytest.fixture
def webhook_server():
    """Local webhook receiver; yields the handler class and the webhook URL"""
    WebhookHandler.received = []
    WebhookHandler.status_codes = []
    with socketserver.TCPServer(("localhost", 0), WebhookHandler) as httpd:
        port = httpd.server_address[1]
        server_thread = threading.Thread(target=httpd.serve_forever, daemon=True)
        server_thread.start()
        try:
            yield WebhookHandler, f"http://127.0.0.1:{port}/webhook"
        finally:
            httpd.shutdown()
