"""
TapVerif CLI
============
Command-line interface for TapVerif.

    tapverif run [--config F] [--scenario NAME ...] [--json]
    tapverif wave --out F [--plot PNG]
    tapverif show-config [--config F]
"""

import argparse
import json
import sys

import structlog
import yaml

from tapverif.config import ConfigError, load_config, override_section
from tapverif.env import VerificationEnv
from tapverif.monitor import WaveformMonitor
from tapverif.scenarios import SCENARIOS
from tapverif.scheduler import ScenarioScheduler
from tapverif.signals.sim import SimulatedTarget
from tapverif.telemetry import setup_logging

logger = structlog.get_logger(system="tapverif.cli")


def _interface(args, config):
    if getattr(args, "ftdi", None):
        # pyftdi is an optional extra; only needed for real hardware
        from tapverif.signals.ftdi import FtdiSignalInterface
        itf = FtdiSignalInterface(url=args.ftdi)
        itf.connect()
        return itf
    return SimulatedTarget(config.protocol, config.timing, config.target)


def _scenarios(names):
    unknown = [n for n in names if n not in SCENARIOS]
    if unknown:
        raise SystemExit(f"Unknown scenario(s): {', '.join(unknown)}. Available: {', '.join(SCENARIOS)}")
    return {n: SCENARIOS[n] for n in names}


def cmd_run(args, config):
    if args.inject_rate is not None:
        try:
            config = override_section(config, "injection", enabled=True, rate=args.inject_rate)
        except ConfigError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2

    env = VerificationEnv(config, _interface(args, config))
    if args.scenario:
        names = args.scenario
    elif config.injection.enabled:
        # Injection is env-wide; only the injection scenario tolerates it
        names = ["error_injection"]
    else:
        names = [n for n in SCENARIOS if n != "error_injection"]
    scheduler = ScenarioScheduler(config.scheduler, env)

    # 1. Run scenarios
    outcomes = scheduler.run_sync(_scenarios(names))
    logger.info("run_complete", scenarios=len(outcomes), passed=sum(o.passed for o in outcomes),
                peak_concurrency=scheduler.peak_in_flight)

    # 2. Collect stale scoreboard entries and report
    env.scoreboard.expire(env.interface.now())
    report = {
        "scenarios": [
            {"name": o.name, "status": o.status, "transactions": o.transactions,
             "duration_s": round(o.duration_s, 4), "failures": o.failures, "error": o.error}
            for o in outcomes
        ],
        "summary": env.summary(),
    }

    if args.json:
        print(json.dumps(report, indent=2, default=str))
    else:
        for o in outcomes:
            mark = "PASS" if o.passed else o.status.upper()
            print(f"[{mark:>7}] {o.name:<16} {o.transactions:>4} transactions  {o.duration_s:.3f}s")
            for failure in o.failures[:5]:
                print(f"           - {failure}")
        s = report["summary"]
        print("-" * 70)
        print(f"Transactions: {s['transactions']}  passed: {s['passed']}")
        print(f"Compliance:   {s['compliance']['compliance_rate']:.1f}%   "
              f"Timing: {s['timing']['pass_rate']:.1f}%   "
              f"Scoreboard match: {s['scoreboard']['match_rate']:.1f}%")
        f = s["faults"]
        if f["injected"]:
            print(f"Faults:       injected {f['injected']}  detected {f['detection_rate']:.1f}%  "
                  f"recovered {f['recovery_rate']:.1f}%")

    if args.out:
        with open(args.out, "w") as fh:
            json.dump(report, fh, indent=2, default=str)
        print(f"Report written to {args.out}")

    return 0 if all(o.passed for o in outcomes) else 1


def cmd_wave(args, config):
    monitor = WaveformMonitor(_interface(args, config))
    env = VerificationEnv(config, monitor)
    ScenarioScheduler(config.scheduler, env).run_sync(_scenarios(args.scenario or ["basic"]))

    changes = monitor.export_vcd(args.out)
    print(f"VCD written to {args.out} ({monitor.cycles} TCK cycles, {changes} changes)")
    if args.plot:
        monitor.plot(filename=args.plot, show=False)
        print(f"Waveform plot written to {args.plot}")
    return 0


def cmd_show_config(args, config):
    print(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="tapverif", description="TapVerif: JTAG TAP protocol verification")
    parser.add_argument("--config", help="YAML configuration profile")
    subparsers = parser.add_subparsers(dest="command", help="Sub-commands")

    # run
    p_run = subparsers.add_parser("run", help="Run verification scenarios")
    p_run.add_argument("--scenario", action="append", help=f"Scenario to run (repeatable): {', '.join(SCENARIOS)}")
    p_run.add_argument("--inject-rate", type=float, help="Enable error injection at this rate (percent)")
    p_run.add_argument("--json", action="store_true", help="Print the report as JSON")
    p_run.add_argument("--out", help="Also write the JSON report to this file")
    p_run.add_argument("--ftdi", metavar="URL", help="Drive real hardware through an FTDI dongle")

    # wave
    p_wave = subparsers.add_parser("wave", help="Run scenarios and dump a VCD waveform")
    p_wave.add_argument("--scenario", action="append", help="Scenario to record (default: basic)")
    p_wave.add_argument("--out", default="tap.vcd", help="Output VCD file")
    p_wave.add_argument("--plot", help="Also save a waveform plot (PNG/SVG)")

    # show-config
    subparsers.add_parser("show-config", help="Print the effective configuration")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(config.logging)

    commands = {"run": cmd_run, "wave": cmd_wave, "show-config": cmd_show_config}
    return commands[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
