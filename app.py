from flask import Flask, request, jsonify
import asyncio
import time
from threading import Lock, Thread
from typing import Optional

from ble_manager import ForceGaugeManager
from ble_utils import BleakTransport
from const import API_HOST, API_PORT, REQUEST_TIMEOUT, UNIT_LBS, UNITS
from notification_handler import convert

app = Flask(__name__)

# Force gauge manager, runs on the background event loop
gauge: Optional[ForceGaugeManager] = None

# Event loop for async operations
loop = None
loop_thread = None
run_future = None
start_lock = Lock()


def start_event_loop():
    """Run the asyncio event loop in this thread"""
    asyncio.set_event_loop(loop)
    loop.run_forever()


def run_async(coro):
    """Run an async coroutine from sync context"""
    if loop is None:
        raise RuntimeError("Event loop not started")
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return future.result(timeout=REQUEST_TIMEOUT)


def start_background(transport_factory=None) -> ForceGaugeManager:
    """Start the event loop thread and the gauge manager on it"""
    global loop, loop_thread, gauge, run_future
    with start_lock:
        if gauge is not None:
            return gauge

        loop = asyncio.new_event_loop()
        loop_thread = Thread(target=start_event_loop, daemon=True)
        loop_thread.start()

        async def create():
            return ForceGaugeManager(transport_factory or BleakTransport)

        gauge = run_async(create())
        run_future = asyncio.run_coroutine_threadsafe(gauge.run(), loop)
        return gauge


def stop_background():
    """Shut down the manager and the event loop thread"""
    global loop, loop_thread, gauge, run_future
    if gauge is not None:
        run_async(gauge.close())
        run_future.result(timeout=REQUEST_TIMEOUT)
    if loop is not None:
        loop.call_soon_threadsafe(loop.stop)
        loop_thread.join(timeout=5)
        loop.close()
    gauge = None
    loop = None
    loop_thread = None
    run_future = None


@app.before_request
def ensure_background():
    """Start the gauge on first request, `flask run` and WSGI servers skip __main__"""
    if gauge is None:
        start_background()


def get_unit():
    unit = request.args.get('unit', UNIT_LBS)
    if unit not in UNITS:
        raise ValueError(f"unit must be one of {', '.join(UNITS)}")
    return unit


def snapshot_response(snapshot, unit=UNIT_LBS):
    data = snapshot.to_dict()
    data["unit"] = unit
    data["current_reading"] = convert(snapshot.current_reading, unit)
    data["max_reading"] = convert(snapshot.max_reading, unit)
    return jsonify(data)


@app.route('/')
def home():
    return jsonify({
        "status": "Force gauge API is running",
        "running": gauge is not None and gauge.is_running,
        "endpoints": {
            "scan": ["/scan/start", "/scan/stop", "/devices"],
            "connection": ["/connect", "/disconnect", "/status"],
            "readings": ["/reading", "/history", "/tare", "/reset-max"],
            "errors": ["/error/ack"]
        }
    })


# ============================================================================
# Scanning
# ============================================================================

@app.route('/scan/start', methods=['POST'])
def scan_start():
    """Start scanning, clears previously discovered devices"""
    try:
        snapshot = run_async(gauge.start_scan())
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/scan/stop', methods=['POST'])
def scan_stop():
    try:
        snapshot = run_async(gauge.stop_scan())
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/devices', methods=['GET'])
def devices():
    """List devices found by the current or last scan"""
    try:
        snapshot = gauge.snapshot
        devices_info = [
            {"identifier": d.identifier, "name": d.display_name}
            for d in snapshot.known_devices
        ]
        return jsonify({
            "status": "success",
            "scanning": snapshot.is_scanning,
            "devices": devices_info,
            "count": len(devices_info)
        })
    except Exception as e:
        return jsonify({"error": str(e)}), 500


# ============================================================================
# Connection
# ============================================================================

@app.route('/connect', methods=['POST'])
def connect():
    try:
        data = request.get_json(silent=True) or {}
        identifier = data.get('identifier')

        if not identifier:
            return jsonify({"error": "identifier required"}), 400

        snapshot = run_async(gauge.connect_to(identifier))
        if snapshot is None:
            return jsonify({"error": "Device not found"}), 404

        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/disconnect', methods=['POST'])
def disconnect():
    try:
        snapshot = run_async(gauge.disconnect())
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/status', methods=['GET'])
def status():
    try:
        return snapshot_response(gauge.snapshot, get_unit())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return jsonify({"error": str(e)}), 500


# ============================================================================
# Readings
# ============================================================================

@app.route('/reading', methods=['GET'])
def reading():
    """Current and max reading in the requested unit"""
    try:
        unit = get_unit()
        snapshot = gauge.snapshot
        return jsonify({
            "connected": snapshot.is_connected,
            "device_name": snapshot.device_name,
            "unit": unit,
            "current": convert(snapshot.current_reading, unit),
            "max": convert(snapshot.max_reading, unit),
            "timestamp": time.time()
        })
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/history', methods=['GET'])
def history():
    try:
        unit = get_unit()
        limit = request.args.get('limit', type=int)
        points = gauge.history.recent(limit, unit)
        return jsonify({
            "unit": unit,
            "points": points,
            "count": len(points)
        })
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/tare', methods=['POST'])
def tare():
    try:
        snapshot = run_async(gauge.tare())
        if not snapshot.is_connected:
            return jsonify({"error": "No device connected"}), 400
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/reset-max', methods=['POST'])
def reset_max():
    """Reset the max reading, also re-zeroes the live reading"""
    try:
        snapshot = run_async(gauge.reset_max())
        if not snapshot.is_connected:
            return jsonify({"error": "No device connected"}), 400
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/error/ack', methods=['POST'])
def acknowledge_error():
    try:
        snapshot = run_async(gauge.acknowledge_error())
        return snapshot_response(snapshot)
    except Exception as e:
        return jsonify({"error": str(e)}), 500


if __name__ == '__main__':
    start_background()
    # Run on all interfaces so it's accessible from the network
    app.run(host=API_HOST, port=API_PORT, debug=False)
