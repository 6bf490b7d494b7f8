#!/usr/bin/env python3

"""CLI tool to list serial ports, send a payload and capture the reply"""

import argparse
import dataclasses
import datetime
import logging
import threading

import msgspec
import ok_logging_setup

import spp_capture

ok_logging_setup.skip_traceback_for(spp_capture.SerialArgumentInvalid)
ok_logging_setup.skip_traceback_for(spp_capture.SerialException)


def main():
    parser = argparse.ArgumentParser(
        description="Talk to one serial (Bluetooth SPP / RS232) device."
    )
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List known serial ports")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="print all properties"
    )

    send_parser = subparsers.add_parser(
        "send", help="Send a message and capture the reply"
    )
    send_parser.add_argument("port", help="serial device path")
    send_parser.add_argument("message", help="text (or hex with --hex)")
    send_parser.add_argument(
        "--duration-ms",
        "-d",
        default=1000.0,
        type=float,
        help="listening window in milliseconds",
    )
    send_parser.add_argument(
        "--no-crlf", action="store_true", help="don't append CR-LF"
    )
    send_parser.add_argument(
        "--hex", action="store_true", help="message is hex bytes, sent as-is"
    )
    send_parser.add_argument(
        "--json", action="store_true", help="print the full result as JSON"
    )

    monitor_parser = subparsers.add_parser(
        "monitor", help="Print incoming data until interrupted"
    )
    monitor_parser.add_argument("port", help="serial device path")

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["list"])

    level = "warning" if getattr(args, "json", False) else "info"
    ok_logging_setup.install({"OK_LOGGING_LEVEL": level})

    if args.command == "list":
        logging.info("🔎 Finding serial ports...")
        found = spp_capture.scan_serial_ports()
        if not found:
            ok_logging_setup.exit("❌ No serial ports found")
        num = len(found)
        logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
        for port in found:
            print(format_detail(port) if args.verbose else format_line(port))

    elif args.command == "send":
        request = spp_capture.CaptureRequest(
            message=args.message,
            duration_ms=args.duration_ms,
            append_crlf=not args.no_crlf,
            send_as_hex=args.hex,
        )
        with spp_capture.SerialLink() as link:
            conn = link.connect(args.port)
            logging.info("🔗 Connected #%d to %s", conn.connection_id, conn.path)
            logging.info("📤 Sending, listening %.0fms...", request.duration_ms)
            result = link.write_and_capture(request)

        if args.json:
            print(msgspec.json.encode(result).decode())
        else:
            logging.info(
                "📥 %d byte%s in %.0fms",
                result.received_bytes,
                "" if result.received_bytes == 1 else "s",
                result.duration_ms,
            )
            print(result.received or "(no response)")
            if result.received_hex:
                print(result.received_hex)

    elif args.command == "monitor":
        stop = threading.Event()

        def on_event(event: spp_capture.SerialEvent):
            print(format_event(event), flush=True)
            if isinstance(event, spp_capture.SerialClosed):
                stop.set()

        with spp_capture.SerialLink() as link:
            link.relay.attach(on_event)
            conn = link.connect(args.port)
            logging.info("🔗 Monitoring %s (Ctrl-C to stop)", conn.path)
            try:
                stop.wait()
            except KeyboardInterrupt:
                logging.info("🛑 Interrupted")


def format_line(port: spp_capture.SerialPort) -> str:
    return f"{port.label} ⚠️ dial-in" if port.is_dialin else port.label


def format_detail(port: spp_capture.SerialPort) -> str:
    fields = dataclasses.asdict(port)
    return f"Port: {port.name}" + "".join(
        f"\n  {k}={v!r}" for k, v in fields.items() if v and k != "name"
    )


def format_event(event: spp_capture.SerialEvent) -> str:
    when = datetime.datetime.fromtimestamp(event.ts).strftime("%H:%M:%S.%f")
    if isinstance(event, spp_capture.SerialData):
        return f"[{when[:-3]}] RX({event.nbytes}): {event.data!r}"
    if isinstance(event, spp_capture.SerialError):
        return f"[{when[:-3]}] ERROR: {event.message}"
    return f"[{when[:-3]}] Port closed ({event.path})"


if __name__ == "__main__":
    main()
