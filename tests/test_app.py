import os

import pytest
from fastapi.testclient import TestClient

from dripfeed import main


@pytest.fixture
def client(tmp_path, monkeypatch, bench):
    monkeypatch.setattr(main.CONFIG.uploads, "dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(main.CONFIG.uploads, "cleanup_interval_s", 0)
    monkeypatch.setattr(main.CONFIG.serial, "poll_interval_s", 0.01)
    monkeypatch.setattr(main, "SERIAL_FACTORY", bench)
    with TestClient(main.app) as c:
        yield c


def _receive_until_terminal(ws):
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] in ("gcode-complete", "error", "baud-rate-test-result"):
            return frames


def test_index_renders(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert "dripfeed" in resp.text


def test_com_ports_lists(client, monkeypatch):
    monkeypatch.setattr(main.serial_channel, "list_ports", lambda prefix="": [{"path": "/dev/ttyUSB0"}])
    assert client.get("/com-ports").json() == {"ports": [{"path": "/dev/ttyUSB0"}]}


def test_com_ports_failure_is_500(client, monkeypatch):
    def boom(prefix=""):
        raise OSError("no sysfs")

    monkeypatch.setattr(main.serial_channel, "list_ports", boom)
    resp = client.get("/com-ports")
    assert resp.status_code == 500
    assert resp.json() == {"ports": [], "error": "no sysfs"}


def test_upload_stores_file(client):
    resp = client.post(
        "/upload",
        files={"gcode": ("my job.gcode", b"G90\nM2\n")},
        data={"baudRate": "115200", "comPort": "/dev/ttyUSB0"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["baudRate"] == 115200
    assert body["comPort"] == "/dev/ttyUSB0"
    assert body["filepath"].endswith("-my_job.gcode")
    with open(body["filepath"], "rb") as f:
        assert f.read() == b"G90\nM2\n"


def test_upload_rejects_extension(client):
    resp = client.post("/upload", files={"gcode": ("notes.txt", b"hi")}, data={"baudRate": "9600", "comPort": "x"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Only .gcode and .nc files are allowed."


@pytest.mark.parametrize(
    "form, message",
    [
        ({"baudRate": "abc", "comPort": "/dev/ttyUSB0"}, "Invalid baud rate provided."),
        ({"baudRate": "9600"}, "COM port is undefined. Please select a valid COM port."),
    ],
)
def test_upload_rejects_bad_form(client, form, message):
    resp = client.post("/upload", files={"gcode": ("a.nc", b"G90\n")}, data=form)
    assert resp.status_code == 400
    assert resp.json()["message"] == message
    uploads = main.uploads_dir()
    assert not uploads.exists() or os.listdir(uploads) == []


def test_drip_feed_over_websocket(client, bench, gcode_file):
    path = gcode_file("G90\nG0 X1\nM2\n")
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "drip-feed", "data": {"filepath": path, "baudRate": 115200, "comPort": "/dev/ttyUSB0"}})
        frames = _receive_until_terminal(ws)

    assert frames == [
        {"event": "progress", "data": 33},
        {"event": "gcode-line", "data": "G90"},
        {"event": "progress", "data": 66},
        {"event": "gcode-line", "data": "G0 X1"},
        {"event": "progress", "data": 100},
        {"event": "gcode-line", "data": "M2"},
        {"event": "gcode-complete", "data": "G-code file complete"},
    ]
    assert bench.lines == ["G90", "G0 X1", "M2"]


def test_drip_feed_validation_error_is_immediate(client, bench, gcode_file):
    path = gcode_file(b"")
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "drip-feed", "data": {"filepath": path, "baudRate": 115200, "comPort": "/dev/ttyUSB0"}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "G-code file is empty."}}
    assert bench.instances == []


def test_test_baud_rate_over_websocket(client, bench):
    bench.open_error = "could not open port /dev/ttyUSB9"
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "test-baud-rate", "data": {"baudRate": 9600, "comPort": "/dev/ttyUSB9"}})
        frame = ws.receive_json()

    assert frame == {
        "event": "baud-rate-test-result",
        "data": {
            "success": False,
            "baudRate": 9600,
            "comPort": "/dev/ttyUSB9",
            "message": "could not open port /dev/ttyUSB9",
        },
    }


def test_unknown_event(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "jog", "data": {}})
        assert ws.receive_json()["event"] == "error"


def test_sessions_endpoint_empty(client):
    assert client.get("/sessions").json() == {"sessions": []}


def test_malformed_frames_get_error_and_socket_stays_open(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("G90 not json")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed message: expected JSON."}}
        ws.send_json(["drip-feed"])
        assert ws.receive_json()["data"]["message"] == "Malformed message: expected an object."
        ws.send_json({"event": "drip-feed", "data": ["/tmp/a.gcode", 9600]})
        assert ws.receive_json()["data"]["message"] == "Malformed data for event: drip-feed"
        ws.send_json({"event": "jog", "data": {}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown event: jog"}}


def test_unexpected_session_crash_still_reaches_observer(client, monkeypatch, gcode_file):
    def exploding_factory(port, **kwargs):
        raise RuntimeError("driver exploded")

    monkeypatch.setattr(main, "SERIAL_FACTORY", exploding_factory)
    path = gcode_file("G90\n")
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "drip-feed", "data": {"filepath": path, "baudRate": 115200, "comPort": "/dev/ttyUSB0"}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "driver exploded"}}
    assert main.SESSIONS == {}
