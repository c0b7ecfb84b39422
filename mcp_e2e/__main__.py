"""Command-line entry point for mcp_e2e.

Usage:
    python -m mcp_e2e run scenarios/                   # every scenario file in a directory
    python -m mcp_e2e run login.txt checkout.yaml      # specific files
    python -m mcp_e2e run login.txt --model openai/qwen2.5 --time-budget 600
    python -m mcp_e2e run scenarios/ --format json     # machine-readable results
    python -m mcp_e2e run scenarios/ --report-dir out/ # write one transcript per scenario

    python -m mcp_e2e tools                            # list the provider's tools
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from mcp_e2e.config import RunnerConfig, load_env_file
from mcp_e2e.runner import format_summary, run_scenarios
from mcp_e2e.scenarios import load_scenarios
from mcp_e2e.transport import ProviderClient

logger = logging.getLogger("mcp_e2e")


def _load_config(args: argparse.Namespace) -> RunnerConfig:
    if args.env_file:
        load_env_file(args.env_file)
    config = RunnerConfig.load(args.config)
    if getattr(args, "model", None):
        config = replace(config, backend=replace(config.backend, model=args.model))
    if getattr(args, "max_concurrent", None):
        config = replace(config, max_concurrent=args.max_concurrent)
    if getattr(args, "time_budget", None):
        config = replace(config, engine=replace(config.engine, time_budget_s=args.time_budget))
    if getattr(args, "app_url", None):
        config = replace(config, app_url=args.app_url)
    config.validate()
    return config


# ---------------------------------------------------------------------------
# run subcommand
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    scenarios = load_scenarios(*args.paths)
    if not scenarios:
        print("No scenarios found.", file=sys.stderr)
        return 1

    results = asyncio.run(run_scenarios(scenarios, config))

    if args.report_dir:
        out = Path(args.report_dir)
        out.mkdir(parents=True, exist_ok=True)
        for r in results:
            (out / f"{r.name}.txt").write_text(r.report + "\n", encoding="utf-8")

    if args.format == "json":
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print(format_summary(results))
    return 0 if all(r.success for r in results) else 1


# ---------------------------------------------------------------------------
# tools subcommand
# ---------------------------------------------------------------------------


async def _list_tools(config: RunnerConfig) -> list[dict[str, str]]:
    async with ProviderClient(config.provider) as client:
        registry = await client.list_capabilities()
    return [{"name": d.name, "description": d.description} for d in registry.descriptors]


def cmd_tools(args: argparse.Namespace) -> int:
    config = _load_config(args)
    tools = asyncio.run(_list_tools(config))
    if args.format == "json":
        print(json.dumps(tools, indent=2))
    else:
        for tool in tools:
            summary = tool["description"].splitlines()[0] if tool["description"] else ""
            print(f"{tool['name']:<28} {summary}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mcp_e2e",
        description="Run natural-language browser tests through an LLM and an MCP tool provider",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML config file (default: $MCP_E2E_CONFIG)")
    common.add_argument("--env-file", help="KEY=VALUE file loaded into the environment first")
    common.add_argument("--format", choices=["text", "json"], default="text", help="Output format")

    # run
    run_p = sub.add_parser("run", parents=[common], help="Run scenario files or directories")
    run_p.add_argument("paths", nargs="+", help="Scenario files (.txt, .csv, .yaml) or directories")
    run_p.add_argument("--model", help="litellm model string, e.g. openai/llama3.2")
    run_p.add_argument("--app-url", help="Target application URL")
    run_p.add_argument("--max-concurrent", type=int, help="Scenarios run in parallel")
    run_p.add_argument("--time-budget", type=float, help="Seconds per scenario")
    run_p.add_argument("--report-dir", help="Write each scenario's transcript here")

    # tools
    sub.add_parser("tools", parents=[common], help="List the tool provider's capabilities")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == "run":
        return cmd_run(args)
    if args.command == "tools":
        return cmd_tools(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
