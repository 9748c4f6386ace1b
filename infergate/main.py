"""Application bootstrap / CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

import yaml

from .config import AppConfig, load_config
from .errors import GatewayError
from .logging_utils import configure_logging, get_logger
from .models import ExecutionRequest, RequestInput, RequestOptions
from .runtime import build_runtime
from .trace import generate_trace_id

_LOG = get_logger("cli")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="infergate")
    p.add_argument(
        "--config",
        default=os.environ.get("INFERGATE_CONFIG", "configs/infergate.yml"),
        help="Path to config YAML (default: configs/infergate.yml or INFERGATE_CONFIG).",
    )
    sub = p.add_subparsers(dest="cmd", required=False)

    sub.add_parser("serve", help="Run the HTTP gateway (default).")
    print_config = sub.add_parser("print-config", help="Load config and print resolved values.")
    print_config.add_argument("--json", action="store_true", help="Print as JSON instead of YAML.")
    sub.add_parser("check-kb", help="Validate KB registry and mappings against scenarios.")
    classify = sub.add_parser("classify", help="Classify one input against a scenario.")
    classify.add_argument("--scenario", required=True)
    classify.add_argument("--text", default=None)
    classify.add_argument(
        "--image",
        action="append",
        default=[],
        help="Image URL; may be given more than once.",
    )
    classify.add_argument("--force-sub-type", default=None)

    return p.parse_args(argv)


def _load(path: str) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        _LOG.warning("Config file {} not found; using defaults", config_path)
        return AppConfig()
    return load_config(config_path)


def _print_config(config: AppConfig, as_json: bool) -> int:
    payload = config.model_dump(mode="json")
    if as_json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        print(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), end="")
    return 0


def _check_kb(config: AppConfig) -> int:
    runtime = build_runtime(config)
    report = runtime.resources.to_dict()
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0 if runtime.resources.ok else 2


def _classify(config: AppConfig, args: argparse.Namespace) -> int:
    runtime = build_runtime(config)
    request = ExecutionRequest(
        scenario_id=args.scenario,
        input=RequestInput(
            text=args.text,
            images=[{"type": "url", "url": url} for url in args.image] or None,
        ),
        options=RequestOptions(force_sub_type=args.force_sub_type),
    )
    try:
        scenario = runtime.service.resolve_scenario(request)
        result = asyncio.run(
            runtime.classifier.classify(request, scenario, trace_id=generate_trace_id())
        )
    except GatewayError as exc:
        print(json.dumps(exc.to_dict(), indent=2, ensure_ascii=False))
        return 1
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _serve(config: AppConfig) -> int:
    import uvicorn

    from .api.app import create_app

    app = create_app(build_runtime(config))
    uvicorn.run(app, host=config.gateway.host, port=config.gateway.port, log_config=None)
    return 0


def main(argv: list[str] | None = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = _parse_args(argv)
    cmd = args.cmd or "serve"

    config = _load(args.config)
    log_cfg = config.logging
    configure_logging(
        log_cfg.log_dir,
        log_cfg.level,
        retrieval_log_path=log_cfg.retrieval_log_path,
    )

    if cmd == "print-config":
        raise SystemExit(_print_config(config, args.json))
    if cmd == "check-kb":
        raise SystemExit(_check_kb(config))
    if cmd == "classify":
        raise SystemExit(_classify(config, args))
    raise SystemExit(_serve(config))


if __name__ == "__main__":
    main()
