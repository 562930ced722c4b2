from __future__ import annotations

# Single-entrypoint CLI.
#
#   python -m hospital_queue.app serve                       # the queue service
#   python -m hospital_queue.app register --name ... --department GEN ...
#   python -m hospital_queue.app advance --entry-id 3 --status InProgress
#   python -m hospital_queue.app watch [--department GEN]    # live dashboard
#
# Everything except `serve` is a thin client talking to the service over MQTT.

import argparse
import json
import sys
from typing import Any

from .config import Settings, configure_logging


def main(argv: list[str] | None = None) -> int:
    defaults = Settings.from_env()

    parser = argparse.ArgumentParser(description="Hospital Queue System (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mqtt_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mqtt-host", default=defaults.mqtt_host)
        p.add_argument("--mqtt-port", type=int, default=defaults.mqtt_port)
        p.add_argument("--namespace", default=defaults.namespace)
        p.add_argument("--timeout", type=float, default=5.0, help="seconds to wait for a reply")
        p.add_argument("--log-level", default=defaults.log_level)

    # ---- the service ----
    from .service import add_service_args

    p_serve = sub.add_parser("serve", help="Run the queue service (engine + broadcaster)")
    add_service_args(p_serve, defaults)

    # ---- desk / doctor commands ----
    p_reg = sub.add_parser("register", help="Register a patient into a department queue")
    add_mqtt_args(p_reg)
    p_reg.add_argument("--name", required=True)
    p_reg.add_argument("--age", type=int, required=True)
    p_reg.add_argument("--gender", required=True)
    p_reg.add_argument("--contact", required=True, help="phone number, identifies returning patients")
    p_reg.add_argument("--department", required=True, help="department code, used as token prefix")
    p_reg.add_argument("--symptoms", default="")

    p_adv = sub.add_parser("advance", help="Move an entry to its next status")
    add_mqtt_args(p_adv)
    p_adv.add_argument("--entry-id", type=int, required=True)
    p_adv.add_argument("--status", required=True, help="InProgress or Completed")

    p_queue = sub.add_parser("queue", help="Show today's queue")
    add_mqtt_args(p_queue)
    p_queue.add_argument("--department", default=None)

    p_pat = sub.add_parser("patient", help="Look up a patient by contact")
    add_mqtt_args(p_pat)
    p_pat.add_argument("--contact", required=True)

    p_hist = sub.add_parser("history", help="Last visits of a patient")
    add_mqtt_args(p_hist)
    p_hist.add_argument("--patient-id", type=int, required=True)

    p_stats = sub.add_parser("stats", help="Today's counters")
    add_mqtt_args(p_stats)

    p_watch = sub.add_parser("watch", help="Follow the queue live (observer)")
    add_mqtt_args(p_watch)
    p_watch.add_argument("--department", default=None, help="only print this department")
    p_watch.add_argument("--observer-id", default=None)
    p_watch.add_argument("--heartbeat-every", type=float, default=10.0)

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        from .service import run_service, settings_from_args

        settings = settings_from_args(args)
        configure_logging(settings.log_level)
        run_service(settings)
        return 0

    configure_logging(args.log_level)
    return _run_client_command(args)


def _run_client_command(args: argparse.Namespace) -> int:
    from .client import QueueClient
    from .errors import QueueError

    client = QueueClient(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace.rstrip("/"),
        name=args.cmd,
        timeout=args.timeout,
    )
    try:
        with client:
            if args.cmd == "register":
                resp = client.register(
                    name=args.name,
                    age=args.age,
                    gender=args.gender,
                    contact=args.contact,
                    department=args.department,
                    symptoms=args.symptoms,
                )
                returning = f"returning, visit #{resp['visit_count']}" if resp["is_returning"] else "new patient"
                print(f"[register] {args.name}: token {resp['token']} (position {resp['position']}, {returning})")
            elif args.cmd == "advance":
                entry = client.update_status(args.entry_id, args.status)
                print(f"[advance] {entry['token']} -> {entry['status']}")
            elif args.cmd == "queue":
                for row in client.queue(args.department):
                    print(_format_row(row))
            elif args.cmd == "patient":
                patient = client.lookup_patient(args.contact)
                print(json.dumps(patient, indent=2) if patient else f"[patient] no patient with contact {args.contact}")
            elif args.cmd == "history":
                for entry in client.history(args.patient_id):
                    print(f"{entry['registered_at']}  {entry['token']:<10} {entry['status']:<10} {entry['symptoms']}")
            elif args.cmd == "stats":
                print(json.dumps(client.stats(), indent=2))
            elif args.cmd == "watch":
                _watch(client, args)
    except QueueError as e:
        print(f"[{args.cmd}] error ({e.code}): {e}", file=sys.stderr)
        return 1
    except TimeoutError:
        print(f"[{args.cmd}] no reply from the queue service", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"[{args.cmd}] cannot reach MQTT broker {args.mqtt_host}:{args.mqtt_port}: {e}", file=sys.stderr)
        return 2
    return 0


def _watch(client: Any, args: argparse.Namespace) -> None:
    department = args.department.strip().upper() if args.department else None

    def on_event(event: dict[str, Any], view: Any) -> None:
        etype = event.get("type")
        if etype == "INITIAL_QUEUE":
            rows = view.rows(department)
            print(f"[watch] {len(rows)} entries today")
            for row in rows:
                print(_format_row(row))
            return
        data = event.get("data") or {}
        if department and data.get("department") != department:
            return
        print(f"[watch] #{event.get('seq')} {etype}: {_format_row(data)}")

    print("[watch] following the queue, Ctrl+C to stop")
    try:
        client.watch(
            on_event,
            observer_id=args.observer_id,
            heartbeat_every=args.heartbeat_every,
        )
    except KeyboardInterrupt:
        pass


def _format_row(row: dict[str, Any]) -> str:
    pos = row.get("position")
    where = f"pos {pos}" if pos is not None else "-"
    return (
        f"{row.get('token', '?'):<10} {row.get('status', '?'):<11} {where:<7} "
        f"{row.get('name', '')} ({row.get('department', '')}, entry {row.get('entry_id')})"
    )


if __name__ == "__main__":
    sys.exit(main())
