"""
Minimal OpenID discovery server for tests.

Answers GET /<domain>/.well-known/openid-configuration with an issuer that
embeds a tenant GUID, the way login.microsoftonline.com does. Domains in
`server.unknown_domains` get a 400 like an unregistered domain would.
"""

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

MOCK_TENANT_ID = "00000000-0000-0000-0000-000000000000"


def _write_json(handler, status, payload):
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


class MockDiscoveryHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        parsed = urlparse(self.path)
        self.server.requests.append(parsed.path)
        if not parsed.path.endswith("/.well-known/openid-configuration"):
            _write_json(self, 404, {"error": "not_found"})
            return

        domain = parsed.path.strip("/").split("/")[0]
        if domain in self.server.unknown_domains:
            _write_json(self, 400, {"error": "invalid_tenant"})
            return
        issuer = f"https://login.microsoftonline.com/{self.server.tenant_id}/v2.0"
        _write_json(self, 200, {"issuer": issuer})

    def log_message(self, _format, *_args):
        return


class MockDiscoveryServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, server_address, handler_class):
        super().__init__(server_address, handler_class)
        self.tenant_id = MOCK_TENANT_ID
        self.unknown_domains = set()
        self.requests = []


def start_server_thread(port=0):
    server = MockDiscoveryServer(("localhost", port), MockDiscoveryHandler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return thread, server
