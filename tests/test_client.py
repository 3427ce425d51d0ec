import unittest

import httpx

from agentdock.client import RegistryClient
from agentdock.errors import NetworkError, NotFoundError, ValidationError


def _client(handler, **kwargs) -> RegistryClient:
    return RegistryClient(transport=httpx.MockTransport(handler), **kwargs)


class TestRegistryClient(unittest.TestCase):
    def test_default_and_request_headers_are_merged(self) -> None:
        seen: list[httpx.Headers] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers)
            return httpx.Response(200, json={"ok": True})

        with _client(handler, default_headers={"User-Agent": "agentdock/test"}) as client:
            data = client.get_json("https://acme.example/index.json", headers={"Authorization": "Bearer tok"})

        self.assertEqual(data, {"ok": True})
        self.assertEqual(seen[0]["user-agent"], "agentdock/test")
        self.assertEqual(seen[0]["authorization"], "Bearer tok")

    def test_404_is_not_found(self) -> None:
        with _client(lambda request: httpx.Response(404)) as client:
            with self.assertRaises(NotFoundError):
                client.get_bytes("https://acme.example/components/x.json")

    def test_server_error_is_network_error(self) -> None:
        with _client(lambda request: httpx.Response(503)) as client:
            with self.assertRaises(NetworkError) as ctx:
                client.get_bytes("https://acme.example/components/x.json")
        self.assertIn("503", str(ctx.exception))

    def test_transport_failure_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with self.assertRaises(NetworkError):
                client.get("https://acme.example/index.json")

    def test_invalid_json_is_validation_error(self) -> None:
        with _client(lambda request: httpx.Response(200, content=b"<html>")) as client:
            with self.assertRaises(ValidationError):
                client.get_json("https://acme.example/index.json")

    def test_redirects_are_followed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old/index.json":
                return httpx.Response(301, headers={"location": "/new/index.json"})
            return httpx.Response(200, content=b"{}")

        with _client(handler) as client:
            self.assertEqual(client.get_json("https://acme.example/old/index.json"), {})


if __name__ == "__main__":
    unittest.main()
