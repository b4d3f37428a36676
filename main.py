import argparse
import asyncio
import logging

from ble_manager import ForceGaugeManager
from const import DEFAULT_NAME_PREFIX, DEFAULT_SCAN_TIME, POLL_INTERVAL_MS, UNIT_LBS, UNITS
from notification_handler import convert


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Read live force values from a BLE load cell")
    parser.add_argument("--scan-time", type=float, default=DEFAULT_SCAN_TIME,
                        help="Seconds to scan before listing devices")
    parser.add_argument("--prefix", default=DEFAULT_NAME_PREFIX,
                        help="Only list devices whose name starts with this prefix")
    parser.add_argument("--unit", choices=UNITS, default=UNIT_LBS)
    parser.add_argument("--poll-interval", type=int, default=POLL_INTERVAL_MS,
                        help="Read interval (ms) for characteristics without notify")
    parser.add_argument("--quiet", action="store_true", help="Do not print every reading")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def select_device(gauge: ForceGaugeManager, scan_time: float, prefix: str):
    """Scan for peripherals and let the user choose one."""
    print(f"Scanning for BLE devices ({scan_time:.0f}s)...")
    snapshot = await gauge.start_scan()
    if snapshot.last_error:
        print(f"[ERROR] {snapshot.last_error}")
        return None

    await asyncio.sleep(scan_time)
    snapshot = await gauge.stop_scan()
    if snapshot.last_error:
        # Scanner failed to start or the radio went away mid-scan
        print(f"[ERROR] {snapshot.last_error}")
        return None

    discovered = [
        d for d in snapshot.known_devices
        if not prefix or (d.name and d.name.startswith(prefix))
    ]
    if not discovered:
        print("No devices found.")
        return None

    num_devices = len(discovered)
    print(f"\nFound {num_devices} device(s):")
    for idx, device in enumerate(discovered, 1):
        print(f"  {idx}. {device.display_name} - {device.identifier}")

    if num_devices == 1:
        return discovered[0]

    while True:
        try:
            choice = await asyncio.to_thread(input, f"\nSelect device (1-{num_devices}): ")
            choice_idx = int(choice) - 1
            if 0 <= choice_idx < num_devices:
                return discovered[choice_idx]
            print("Invalid selection. Try again.")
        except ValueError:
            print("Please enter a number.")
        except (EOFError, KeyboardInterrupt):
            print("\nSelection cancelled.")
            return None


def make_printer(unit: str):
    """Snapshot listener printing readings and new errors"""
    last = {"reading": None, "error": None, "advisory": None, "state": None}

    def on_snapshot(snapshot):
        state = snapshot.state.phase.value
        if state != last["state"]:
            print(f"[STATE] {state}" + (f" ({snapshot.device_name})" if snapshot.device_name else ""))
            last["state"] = state
        if snapshot.last_error and snapshot.last_error != last["error"]:
            print(f"[ERROR] {snapshot.last_error}")
        if snapshot.advisory and snapshot.advisory != last["advisory"]:
            print(f"[INFO] {snapshot.advisory}")
        last["error"] = snapshot.last_error
        last["advisory"] = snapshot.advisory

        if unit is None or not snapshot.is_connected:
            return
        if snapshot.current_reading != last["reading"]:
            print(f"  {convert(snapshot.current_reading, unit):10.2f} {unit}"
                  f"   max {convert(snapshot.max_reading, unit):.2f}")
            last["reading"] = snapshot.current_reading

    return on_snapshot


async def interactive(args):
    gauge = ForceGaugeManager(poll_interval_ms=args.poll_interval)
    runner = asyncio.create_task(gauge.run())
    try:
        await gauge.sync()
        device = await select_device(gauge, args.scan_time, args.prefix)
        if device is None:
            return

        gauge.add_listener(make_printer(None if args.quiet else args.unit))
        print(f"\nConnecting to {device}...")
        await gauge.connect(device)

        print("\nCommands:")
        print("  - 'tare' to zero the current reading")
        print("  - 'reset' to reset the max (also tares)")
        print("  - 'data' to view the current and max reading")
        print("  - 'history' to view recent readings")
        print("  - 'ack' to clear the last error")
        print("  - 'quit' to exit")
        print()

        while True:
            try:
                command = await asyncio.to_thread(input, "")
            except (EOFError, KeyboardInterrupt):
                print("\nExiting...")
                break

            command = command.strip().lower()
            if command == 'quit':
                break
            elif command == 'tare':
                await gauge.tare()
            elif command == 'reset':
                await gauge.reset_max()
            elif command == 'ack':
                await gauge.acknowledge_error()
            elif command == 'data':
                snapshot = gauge.snapshot
                print(f"\n[DEVICE DATA] {snapshot.device_name or 'not connected'}")
                print(f"  Current: {convert(snapshot.current_reading, args.unit):.2f} {args.unit}")
                print(f"  Max: {convert(snapshot.max_reading, args.unit):.2f} {args.unit}")
                for cid, mode in snapshot.streams.items():
                    print(f"  {cid}: {mode}")
                if snapshot.last_error:
                    print(f"  Last error: {snapshot.last_error}")
                print()
            elif command == 'history':
                print("\n[HISTORY]")
                points = gauge.history.recent(20, args.unit)
                if points:
                    for point in points:
                        print(f"  [{point['time']}] {point['value']:.2f} {args.unit}")
                else:
                    print("  No readings received yet")
                print()
            elif command:
                print(f"Unknown command: {command}")

        await gauge.disconnect()
        # Give the link a moment to close cleanly
        await asyncio.sleep(0.5)
    finally:
        await gauge.close()
        await runner


def cli(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(interactive(args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")


if __name__ == "__main__":
    cli()
