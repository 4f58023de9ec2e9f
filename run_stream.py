#!/usr/bin/env python3
"""Stream a G-code file to a controller with flow control.

Sends every line of the file through a SerialPort, prints progress as the
firmware acknowledges commands and reports errors and wipes as they arrive.

Examples:
    python run_stream.py part.gcode --port /dev/ttyUSB0 --buffer repetier
    python run_stream.py part.gcode --fake
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from bufferflow_lib import AVAILABLE_BUFFER_ALGORITHMS, CollectingSink, SerialPort
from bufferflow_lib.models import CommandComplete, PortError, WipedQueue
from bufferflow_lib.protocol import DEFAULT_BAUD
from fakes.fake_serial import FakeSerial

logger = logging.getLogger("run_stream")


def main():
    parser = argparse.ArgumentParser(description="Stream a G-code file with buffer flow control")
    parser.add_argument("file", type=Path,
                       help="G-code file to send")
    parser.add_argument("--port", default="/dev/ttyUSB0",
                       help="Serial port (default: /dev/ttyUSB0)")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                       help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--buffer", default="repetier", choices=AVAILABLE_BUFFER_ALGORITHMS,
                       help="Buffer algorithm (default: repetier)")
    parser.add_argument("--timeout", type=float, default=600.0,
                       help="Give up after this many seconds (default: 600)")
    parser.add_argument("--fake", action="store_true",
                       help="Use FakeSerial")
    parser.add_argument("--verbose", action="store_true",
                       help="Log per-line serial traffic")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    sink = CollectingSink()
    port = SerialPort(args.port if not args.fake else "FakeSerial", sink,
                      buffer_algorithm=args.buffer, baud=args.baud)
    passed = False

    try:
        print(f"{'='*60}")
        print(f"File: {args.file}")
        print(f"Port: {port.name}")
        print(f"Buffer: {args.buffer}")
        print(f"{'='*60}\n")

        port.open(serial_port=FakeSerial() if args.fake else None)

        staged = port.send(args.file.read_text(), id=args.file.name)
        logger.info(f"Staged {staged} commands")

        if args.buffer == "default":
            # Nothing reports completion without accounting, wait for the writer instead
            passed = port.wait_until_idle(timeout=args.timeout)
        else:
            start_time = time.time()
            last_done = -1

            while time.time() - start_time < args.timeout:
                completes = sink.of_type(CommandComplete)
                done = len(completes)
                if done != last_done:
                    elapsed = time.time() - start_time
                    print(f"  [{elapsed:6.1f}s] {done}/{staged} complete, "
                          f"{port.bufferflow.queue.total_bytes()} bytes in device buffer")
                    last_done = done

                if sink.of_type(PortError) or sink.of_type(WipedQueue):
                    break
                if done >= staged:
                    passed = True
                    break
                time.sleep(0.5)

            errors = [c for c in sink.of_type(CommandComplete) if c.cmd == "Error"]
            for error in errors:
                print(f"  Error response for: {error.data.strip()}")
            for wipe in sink.of_type(WipedQueue):
                print(f"  Buffer wiped on {wipe.port}, {wipe.qcnt} commands left")
            for port_error in sink.of_type(PortError):
                print(f"  {port_error.message}")
            passed = passed and not errors

    except KeyboardInterrupt:
        print("\nInterrupted, wiping buffer...")
    except Exception as e:
        logger.error(f"Stream failed: {e}", exc_info=True)
        passed = False

    finally:
        port.close()

    print()
    print("✓ PASS: File streamed" if passed else "✗ FAIL: File not fully streamed")
    print("=" * 60)

    sys.exit(0 if passed else 1)


if __name__ == "__main__":
    main()
