import tempfile
import unittest
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import init_routes, router
from discovery.models import PeerAddress
from discovery.service import DiscoveryService
from transfer.manager import TransferManager


class RoutesTest(unittest.TestCase):
    """Routes against idle services; no listener, no network."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.discovery = DiscoveryService(port=0)
        self.manager = TransferManager(device_name="Desk", save_dir=str(self.root / "inbox"))
        init_routes(self.discovery, self.manager)

        app = FastAPI()
        app.include_router(router)
        self.client = TestClient(app)

    def tearDown(self):
        self._tmp.cleanup()

    def test_devices_lists_discovered_peers(self):
        self.discovery.update_peer(PeerAddress.parse("tcp://10.0.0.2:4000|Pixel"))
        response = self.client.get("/api/devices")
        self.assertEqual(response.status_code, 200)
        devices = response.json()["devices"]
        self.assertEqual(len(devices), 1)
        self.assertEqual(devices[0]["uri"], "tcp://10.0.0.2:4000|Pixel")
        self.assertEqual(devices[0]["address"]["device_name"], "Pixel")

    def test_address_requires_listener(self):
        self.assertEqual(self.client.get("/api/address").status_code, 503)

    def test_connect_rejects_malformed_address(self):
        response = self.client.post("/api/connect", json={"address": "10.0.0.2-4000"})
        self.assertEqual(response.status_code, 400)

    def test_connect_reports_transport_failure(self):
        # No TLS material configured, so the dial cannot even start
        response = self.client.post("/api/connect", json={"address": "tcp://10.0.0.2:4000|Pixel"})
        self.assertEqual(response.status_code, 502)

    def test_connection_state_when_idle(self):
        response = self.client.get("/api/connection")
        self.assertEqual(response.json(), {"connected": False, "device_name": None, "role": None})
        self.assertEqual(self.client.delete("/api/connection").status_code, 200)

    def test_send_missing_file(self):
        response = self.client.post("/api/transfers", json={"file_path": str(self.root / "nope")})
        self.assertEqual(response.status_code, 404)

    def test_send_without_pairing(self):
        path = self.root / "photo.jpg"
        path.write_bytes(b"jpeg")
        response = self.client.post("/api/transfers", json={"file_path": str(path)})
        self.assertEqual(response.status_code, 503)

    def test_transfer_history_starts_empty(self):
        body = self.client.get("/api/transfers").json()
        self.assertEqual(body["sent"], [])
        self.assertEqual(body["received"], [])
        self.assertEqual(body["total_sent_bytes"], 0)
        self.assertFalse(body["sending"])

    def test_settings_round_trip(self):
        new_dir = str(self.root / "elsewhere")
        response = self.client.put("/api/settings", json={"device_name": "Laptop", "save_dir": new_dir})
        self.assertEqual(response.status_code, 200)

        settings = self.client.get("/api/settings").json()
        self.assertEqual(settings, {"device_name": "Laptop", "save_dir": new_dir})
        # Nothing to advertise until the listener is up
        self.assertIsNone(self.discovery.advertised_address)
        self.assertTrue(Path(new_dir).is_dir())

    def test_device_name_cannot_break_the_address_format(self):
        response = self.client.put("/api/settings", json={"device_name": "a|b"})
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
