from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from typing import Optional

from .admin import AdminResponse, AdminService
from .config_manager import ConfigManager
from .models import Beacon, Gateway
from .mqtt_processor import MQTTIngestionService


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _bool(v: str) -> bool:
    s = v.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"not a boolean: {v}")


def _service(args) -> MQTTIngestionService:
    service = MQTTIngestionService(args.config_manager)
    service.load()
    return service


def _print(response: AdminResponse) -> int:
    print(json.dumps(response.to_dict(), ensure_ascii=False, indent=2, default=str))
    return 0 if response.success else 1


def run_mqtt(args):
    service = MQTTIngestionService(args.config_manager)
    service.start()

    # graceful shutdown
    def handle_signal(sig, frame):
        service.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    service.wait()
    return 0


# ---------- Calibration ----------
def cmd_calibration(args):
    admin = AdminService(_service(args))
    match args.action:
        case "add":
            return _print(admin.add_calibration_point(args.beacon, args.gateway, args.distance, args.rssi))
        case "create":
            return _print(admin.create_calibration_point(args.beacon, args.gateway, args.distance, args.rssi))
        case "update":
            return _print(admin.update_calibration_point(args.beacon, args.gateway, args.distance, args.rssi))
        case "remove":
            return _print(admin.remove_calibration(args.beacon, args.gateway))
        case "show":
            return _print(admin.get_calibration(args.beacon, args.gateway))
        case "list":
            return _print(admin.list_calibrations())
        case "reload":
            return _print(admin.reload_calibration())
    return 2


# ---------- Retention ----------
def cmd_retention(args):
    admin = AdminService(_service(args))
    match args.action:
        case "policies":
            return _print(admin.retention_policies())
        case "stats":
            return _print(admin.log_statistics())
        case "sweep":
            return _print(admin.run_retention_sweep())
        case "seed":
            return _print(admin.seed_retention_policies())
    return 2


# ---------- Devices ----------
def cmd_vibrate(args):
    service = _service(args)
    if not service.transport.connect():
        print(json.dumps({"success": False, "message": "MQTT not connected"}))
        return 1
    try:
        return _print(AdminService(service).vibrate(args.beacon, args.gateway, args.ring_type, args.ring_time))
    finally:
        service.transport.disconnect()


def cmd_gateway(args):
    admin = AdminService(_service(args))
    if args.action == "add":
        return _print(
            admin.register_gateway(
                Gateway(
                    gateway_id=args.gateway,
                    name=args.name or args.gateway,
                    mqtt_topic=args.topic or "",
                    proximity_threshold=args.threshold if args.threshold is not None else 5.0,
                    auto_vibration=bool(args.auto_vibration),
                )
            )
        )
    return _print(admin.update_gateway_settings(args.gateway, args.threshold, args.auto_vibration))


def cmd_beacon(args):
    admin = AdminService(_service(args))
    return _print(
        admin.register_beacon(
            Beacon(beacon_id=args.beacon, name=args.name or args.beacon, mac_address=args.mac, tx_power=args.tx_power)
        )
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ble-proximity-server", description="BLE proximity alert server CLI")
    parser.add_argument(
        "--config", default=None, help="config file, defaults to ./config/config.yaml or $BLE_PROXIMITY_CONFIG"
    )
    parser.add_argument("--log-level", default=None, help="overrides logging.level from the config")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="listen for sightings and raise proximity alerts")
    p_run.set_defaults(func=run_mqtt)

    p_cal = sub.add_parser("calibration", help="manage RSSI calibration points")
    cal_sub = p_cal.add_subparsers(dest="action", required=True)
    for action in ("add", "create", "update"):
        p = cal_sub.add_parser(action)
        p.add_argument("beacon")
        p.add_argument("gateway")
        p.add_argument("distance", type=float, help="meters")
        p.add_argument("rssi", type=float, help="dBm")
    for action in ("remove", "show"):
        p = cal_sub.add_parser(action)
        p.add_argument("beacon")
        p.add_argument("gateway")
    cal_sub.add_parser("list")
    cal_sub.add_parser("reload")
    p_cal.set_defaults(func=cmd_calibration)

    p_ret = sub.add_parser("retention", help="log retention policies and sweeps")
    ret_sub = p_ret.add_subparsers(dest="action", required=True)
    for action in ("policies", "stats", "sweep", "seed"):
        ret_sub.add_parser(action)
    p_ret.set_defaults(func=cmd_retention)

    p_vib = sub.add_parser("vibrate", help="send a vibration command to a beacon")
    p_vib.add_argument("beacon")
    p_vib.add_argument("--gateway", default=None)
    p_vib.add_argument("--ring-type", type=int, default=None)
    p_vib.add_argument("--ring-time", type=int, default=None, help="milliseconds")
    p_vib.set_defaults(func=cmd_vibrate)

    p_gw = sub.add_parser("gateway", help="register a gateway or change its alert settings")
    p_gw.add_argument("action", choices=["add", "set"])
    p_gw.add_argument("gateway")
    p_gw.add_argument("--name", default=None)
    p_gw.add_argument("--topic", default=None)
    p_gw.add_argument("--threshold", type=float, default=None, help="meters, 0.1-100")
    p_gw.add_argument("--auto-vibration", type=_bool, default=None)
    p_gw.set_defaults(func=cmd_gateway)

    p_bc = sub.add_parser("beacon", help="register a beacon")
    p_bc.add_argument("beacon")
    p_bc.add_argument("mac")
    p_bc.add_argument("--name", default=None)
    p_bc.add_argument("--tx-power", type=float, default=None)
    p_bc.set_defaults(func=cmd_beacon)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.config_manager = ConfigManager(args.config)
    setup_logging(args.log_level or args.config_manager.get_log_level())
    # no subcommand: run the server
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
