import pytest

import app as app_module
from conftest import GAUGE, FakeTransport
from events import ConnectFailed, ConnectSucceeded, DeviceDiscovered, ValueUpdated


@pytest.fixture
def client():
    app_module.start_background(FakeTransport)
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as client:
        yield client
    app_module.stop_background()


def post_events(*events):
    gauge = app_module.gauge
    for event in events:
        app_module.loop.call_soon_threadsafe(gauge.post_event, event)
    app_module.run_async(gauge.sync())


def test_home(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.get_json()["running"] is True


def test_scan_and_list_devices(client):
    response = client.post('/scan/start')
    assert response.status_code == 200
    assert response.get_json()["scanning"] is True

    post_events(DeviceDiscovered(GAUGE), DeviceDiscovered(GAUGE))
    data = client.get('/devices').get_json()
    assert data["count"] == 1
    assert data["devices"][0] == {"identifier": GAUGE.identifier, "name": GAUGE.name}

    assert client.post('/scan/stop').get_json()["scanning"] is False


def test_connect_validation(client):
    assert client.post('/connect', json={}).status_code == 400
    assert client.post('/connect', json={"identifier": "nope"}).status_code == 404


def test_tare_requires_connection(client):
    assert client.post('/tare').status_code == 400
    assert client.post('/reset-max').status_code == 400


def test_readings_in_both_units(client):
    client.post('/scan/start')
    post_events(DeviceDiscovered(GAUGE))
    response = client.post('/connect', json={"identifier": GAUGE.identifier})
    assert response.get_json()["state"] == "connecting"

    post_events(ConnectSucceeded(GAUGE), ValueUpdated("force", b"10"))
    data = client.get('/reading').get_json()
    assert data["connected"] is True
    assert data["device_name"] == GAUGE.name
    assert data["current"] == 10.0

    data = client.get('/reading?unit=kg').get_json()
    assert data["current"] == pytest.approx(4.53592)
    assert data["max"] == pytest.approx(4.53592)
    assert client.get('/reading?unit=oz').status_code == 400

    history = client.get('/history?limit=5').get_json()
    assert history["count"] == 1
    assert history["points"][0]["value"] == 10.0

    data = client.post('/tare').get_json()
    assert data["current_reading"] == 0.0
    data = client.post('/reset-max').get_json()
    assert data["max_reading"] == 0.0


def test_connect_failure_and_acknowledge(client):
    client.post('/scan/start')
    post_events(DeviceDiscovered(GAUGE))
    client.post('/connect', json={"identifier": GAUGE.identifier})
    post_events(ConnectFailed(GAUGE, "timeout"))

    data = client.get('/status').get_json()
    assert data["state"] == "idle"
    assert data["last_error"] == "Failed to connect: timeout"

    data = client.post('/error/ack').get_json()
    assert data["last_error"] is None


def test_first_request_starts_gauge(monkeypatch):
    # Under `flask run` nothing calls start_background() up front
    monkeypatch.setattr(app_module, "BleakTransport", FakeTransport)
    assert app_module.gauge is None
    app_module.app.config["TESTING"] = True
    try:
        with app_module.app.test_client() as client:
            response = client.post('/scan/start')
            assert response.status_code == 200
            assert response.get_json()["scanning"] is True
            assert isinstance(app_module.gauge.transport, FakeTransport)
    finally:
        app_module.stop_background()
    assert app_module.gauge is None
