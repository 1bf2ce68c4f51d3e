#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
i2pd control bridge: drive a background i2pd router from a host application.

Features
- Idempotent workspace provisioning (directories, seeded i2pd.conf, bundled certificates)
- Lifecycle controller with serialized transitions and graceful shutdown
- JSON-lines command channel on stdin/stdout for the host UI
- Signal-driven background scheduling: SIGUSR1/SIGUSR2 for background/foreground,
  SIGTERM/SIGINT trigger a bounded graceful shutdown
"""

import argparse
import json
import logging
import sys
import threading
from typing import List, Optional, Tuple

from .channel import CommandChannel, serve_lines
from .controller import RouterController, RouterState
from .engine import I2PControlClient, I2pdDaemonEngine, RouterEngine, StubEngine
from .errors import BridgeError
from .scheduler import (
    BackgroundScheduler,
    LifecycleEvent,
    SignalEventSource,
    TimedExecutionHost,
)
from .settings import BridgeSettings, load_settings, setup_logging
from .status import StatusAggregator
from .workspace import ensure_workspace, reset_config

LOGGER = logging.getLogger("i2pd_bridge.bridge")


def build_engine(settings: BridgeSettings) -> RouterEngine:
    if settings.engine == "daemon":
        control = I2PControlClient(
            address=settings.i2pcontrol_address,
            port=settings.i2pcontrol_port,
            password=settings.i2pcontrol_password,
        )
        return I2pdDaemonEngine(binary=settings.i2pd_binary, control=control)
    return StubEngine()


def build_bridge(settings: BridgeSettings) -> Tuple[RouterController, CommandChannel, BackgroundScheduler]:
    controller = RouterController(
        build_engine(settings),
        certificates_bundle=settings.certificates_bundle,
        grace_period=settings.grace_period_s,
    )
    channel = CommandChannel(controller, StatusAggregator(controller), default_data_path=settings.data_dir)
    scheduler = BackgroundScheduler(
        controller,
        TimedExecutionHost(settings.background_allowance_s),
        terminate_timeout=settings.terminate_timeout_s,
    )
    return controller, channel, scheduler


def _attach_signals(scheduler: BackgroundScheduler, stop: threading.Event) -> SignalEventSource:
    source = SignalEventSource()
    scheduler.attach(source)

    def _on_terminate(event: LifecycleEvent) -> None:
        if event is LifecycleEvent.ABOUT_TO_TERMINATE:
            stop.set()

    source.subscribe(_on_terminate)
    source.install()
    return source


# ──────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────
def cmd_serve(settings: BridgeSettings, args: argparse.Namespace) -> int:
    controller, channel, scheduler = build_bridge(settings)
    stop = threading.Event()
    source = _attach_signals(scheduler, stop)

    def _reader():
        try:
            served = serve_lines(channel, sys.stdin, sys.stdout, stop)
            LOGGER.info("Command channel closed after %d request(s)", served)
        finally:
            stop.set()

    reader = threading.Thread(target=_reader, name="command-channel", daemon=True)
    LOGGER.info("Serving command channel on stdio (engine=%s)", settings.engine)
    reader.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        source.uninstall()
        if controller.state is RouterState.RUNNING:
            scheduler.about_to_terminate()
    return 0


def cmd_run(settings: BridgeSettings, args: argparse.Namespace) -> int:
    controller, channel, scheduler = build_bridge(settings)
    stop = threading.Event()
    source = _attach_signals(scheduler, stop)
    try:
        channel.call("initialize", {"dataPath": settings.data_dir})
        channel.call("start")
        while not stop.wait(max(1.0, args.status_interval)):
            LOGGER.info("Router status: %s", json.dumps(channel.call("getRouterInfo")))
    finally:
        source.uninstall()
        if controller.state is RouterState.RUNNING:
            scheduler.about_to_terminate()
    return 0


def cmd_provision(settings: BridgeSettings, args: argparse.Namespace) -> int:
    layout = ensure_workspace(args.data_dir or settings.data_dir, settings.certificates_bundle)
    print(json.dumps(layout.as_dict(), indent=2))
    return 0


def cmd_reset_config(settings: BridgeSettings, args: argparse.Namespace) -> int:
    layout = ensure_workspace(args.data_dir or settings.data_dir, settings.certificates_bundle)
    reset_config(layout)
    print(f"→ rewrote {layout.config_file}")
    return 0


# ──────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="i2pd-bridge", description="Control bridge for a background i2pd router")
    ap.add_argument("--config", help="Path to a JSON settings file")
    ap.add_argument("--env-file", help="Path to a .env file (defaults to ./.env when present)")
    sub = ap.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("serve", help="Answer JSON-lines commands on stdin/stdout")
    sp.set_defaults(func=cmd_serve)

    rp = sub.add_parser("run", help="Initialize and start the router, log status until terminated")
    rp.add_argument("--status-interval", type=float, default=30.0, help="Seconds between status log lines")
    rp.set_defaults(func=cmd_run)

    pp = sub.add_parser("provision", help="Create the workspace and print its layout")
    pp.add_argument("--data-dir", help="Workspace root (overrides settings)")
    pp.set_defaults(func=cmd_provision)

    cp = sub.add_parser("reset-config", help="Rewrite i2pd.conf from the default template")
    cp.add_argument("--data-dir", help="Workspace root (overrides settings)")
    cp.set_defaults(func=cmd_reset_config)
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.config, args.env_file)
        setup_logging(settings)
        return args.func(settings, args)
    except BridgeError as exc:
        LOGGER.error("%s: %s", exc.code, exc.message)
        print(f"error: {exc.code}: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
