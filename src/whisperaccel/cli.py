from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .capabilities import CapabilityModel, capabilities_from_file
from .descriptor import BackendDescriptor, BackendKind, module_name, performance_profile
from .doctor import run_doctor
from .engine import BackendEngine
from .errors import LegacyFallbackFailed
from .events import EventEmitter, MemoryEventSink
from .fallback import build_fallback_chain
from .logging_config import setup_logging
from .models import ModelStore
from .platforms import PlatformInfo
from .selection import DEFAULT_PRIORITY, select_optimal_gpu
from .settings import EngineConfig, PreferenceStore, load_settings


def _platform(args: argparse.Namespace) -> PlatformInfo:
    current = PlatformInfo.current()
    return PlatformInfo.of(args.platform or current.system, args.arch or current.arch)


def _config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_settings(load_settings(args.settings))


def _capabilities(path: Optional[Path]) -> CapabilityModel:
    if path is None:
        return CapabilityModel.cpu_only()
    return capabilities_from_file(path)


def _priority(value: Optional[str]) -> List[str]:
    if not value:
        return list(DEFAULT_PRIORITY)
    return [p.strip() for p in value.split(",") if p.strip()]


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


def _print_trace(sink: MemoryEventSink) -> None:
    print("\nDecision trace:")
    for ev in sink.events:
        print(f"  [{ev.category}] {ev.name}: {ev.message}")


def _descriptor_payload(descriptor: BackendDescriptor) -> Dict[str, Any]:
    return {**descriptor.to_dict(), "performance": performance_profile(descriptor)}


def cmd_select(args: argparse.Namespace) -> None:
    config = _config(args)
    sink = MemoryEventSink()
    descriptor = select_optimal_gpu(
        _priority(args.priority),
        _capabilities(args.capabilities),
        args.model,
        platform=_platform(args),
        model_store=ModelStore(config.models_path) if config.models_path else None,
        emitter=EventEmitter(sink),
        large_model_mb=config.large_model_mb,
    )
    _print_json(_descriptor_payload(descriptor))
    if args.trace:
        _print_trace(sink)


def cmd_chain(args: argparse.Namespace) -> None:
    platform = _platform(args)
    kind = BackendKind(args.kind)
    failed = BackendDescriptor(kind, module_name(kind, platform), f"{kind.value} backend")
    chain = build_fallback_chain(failed, platform)
    print(f"Fallback chain after {kind.value} failure on {platform}:")
    for i, d in enumerate(chain, start=1):
        print(f"  {i}. {d.display_name}  [{d.module_path}]  reason={d.fallback_reason}")


def cmd_load(args: argparse.Namespace) -> None:
    config = _config(args)
    sink = MemoryEventSink()
    engine = BackendEngine(
        config,
        probe=(lambda: capabilities_from_file(args.capabilities)) if args.capabilities else None,
        preferences=PreferenceStore(args.settings),
        emitter=EventEmitter(sink),
        platform=_platform(args),
    )
    try:
        adapter = engine.select_and_load(args.model)
    except LegacyFallbackFailed as e:
        print(f"Failed: {e}", file=sys.stderr)
        if args.trace:
            _print_trace(sink)
        raise SystemExit(1)

    print(f"Loaded: {adapter.display_name}")
    print(f"Artifact: {adapter.artifact}")
    _print_json(adapter.injected)
    if args.trace:
        _print_trace(sink)


def cmd_doctor(args: argparse.Namespace) -> None:
    rep = run_doctor(_config(args), _platform(args))
    print("whisperaccel doctor\n")
    for name, data in rep.checks.items():
        print(f"- {name}:")
        for k, v in data.items():
            print(f"    {k}: {v}")
    print("\nOK" if rep.ok else "\nNOT OK (no CPU backend module found)")


def _add_platform_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--platform", type=str, default=None, help="Platform id (win32, linux, darwin); default: this host")
    p.add_argument("--arch", type=str, default=None, help="Architecture (x64, arm64); default: this host")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="whisperaccel", description="Speech-to-text backend selection")
    parser.add_argument("--settings", type=Path, default=None, help="Path to a YAML settings file")
    parser.add_argument("--log-level", type=str, default="WARNING")
    sub = parser.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("select", help="Select a backend for a model from a capability snapshot.")
    s.add_argument("--model", type=str, default="base")
    s.add_argument("--capabilities", type=Path, default=None, help="YAML/JSON capability snapshot (default: CPU only)")
    s.add_argument("--priority", type=str, default=None, help="Comma-separated vendor order, e.g. intel,nvidia,cpu")
    s.add_argument("--trace", action="store_true", help="Print the decision trace")
    _add_platform_args(s)
    s.set_defaults(func=cmd_select)

    c = sub.add_parser("chain", help="Show the fallback chain for a failed backend.")
    c.add_argument("kind", choices=[k.value for k in BackendKind])
    _add_platform_args(c)
    c.set_defaults(func=cmd_chain)

    ld = sub.add_parser("load", help="Select, load and validate a backend module.")
    ld.add_argument("--model", type=str, default="base")
    ld.add_argument("--capabilities", type=Path, default=None)
    ld.add_argument("--trace", action="store_true")
    _add_platform_args(ld)
    ld.set_defaults(func=cmd_load)

    d = sub.add_parser("doctor", help="Check which backend modules and runtimes are available.")
    _add_platform_args(d)
    d.set_defaults(func=cmd_doctor)

    args = parser.parse_args(argv)
    setup_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING))
    args.func(args)


if __name__ == "__main__":
    main()
