"""
Main entry point — parse args, load config, wire the orchestrator, run one prompt.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import os
import sys

from .backends.http_bridge import HttpBridgeClient
from .backends.local_bridge import LocalBridge
from .backends.virtual_fs import virtual_fs_providers
from .config.settings import Config, load_config
from .core.agent import LoopResult, LoopStatus
from .core.event_bus import EventType
from .core.orchestrator import Orchestrator
from .core.structured_logger import setup_structured_logging
from .core.virtual_fs import VirtualFileSystem

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="browser-agent",
        description="Autonomous browser agent — run one task from the command line",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Task for the agent (read from stdin when omitted)",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config YAML file",
        default=None,
    )
    parser.add_argument(
        "-p", "--profile",
        help="LLM profile id to start with",
        default=None,
    )
    parser.add_argument(
        "-m", "--model",
        help="Model name for the flat llm profile",
        default=None,
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help="Maximum model turns for this run",
    )
    parser.add_argument(
        "--workspace",
        help="Working directory for shell and file tools",
        default=None,
    )
    parser.add_argument(
        "--bridge-url",
        help="Forward shell and file tools to a remote bridge instead of running them locally",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Log level (overrides -v)",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Print model output as it arrives",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run result as JSON",
    )
    return parser.parse_args(argv)


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    if args.profile:
        config.set("llm.default_profile", args.profile)
    if args.model:
        config.set("llm.model", args.model)
    if args.max_steps is not None:
        config.set("agent.max_steps", max(1, min(500, args.max_steps)))
    if args.workspace:
        config.set("bridge.workspace_dir", os.path.abspath(args.workspace))
    if args.bridge_url:
        config.set("bridge.mode", "http")
        config.set("bridge.url", args.bridge_url)
    if args.verbose >= 2:
        config.set("logging.level", "DEBUG")
    elif args.verbose >= 1:
        config.set("logging.level", "INFO")
    if args.log_level:
        config.set("logging.level", args.log_level)


def build_orchestrator(config: Config) -> Orchestrator:
    """Create an orchestrator with the bridge and virtual filesystem providers registered."""
    orch = Orchestrator(config.as_dict())

    mode = str(config.get("bridge.mode", "local")).lower()
    url = config.get("bridge.url", "")
    if mode == "http" and url:
        timeout_s = config.get("bridge.bash_timeout_ms", 120_000) / 1000 + 10
        client = HttpBridgeClient(url, token=config.get("bridge.token", ""), timeout=timeout_s)
        orch.register_providers(client.providers())
        logger.info(f"Bridge: HTTP at {url}")
    else:
        if mode == "http":
            logger.warning("bridge.mode is http but bridge.url is empty; using the local bridge")
        bridge = LocalBridge(
            workspace_dir=config.get("bridge.workspace_dir", "."),
            strict_roots=bool(config.get("bridge.strict_roots", True)),
        )
        orch.register_providers(bridge.providers())
        logger.info(f"Bridge: local, workspace {bridge.workspace}")

    orch.register_providers(virtual_fs_providers(VirtualFileSystem()))
    return orch


def _stream_to(stream):
    def on_event(event):
        if event.event_type is EventType.LLM_STREAM_DELTA:
            stream.write(str(event.payload.get("text", "")))
            stream.flush()
    return on_event


async def run_prompt(orch: Orchestrator, prompt: str, stream=None) -> LoopResult:
    session_id = orch.store.create_session()
    if stream is not None:
        orch.events.subscribe(EventType.LLM_STREAM_DELTA, _stream_to(stream))
    return await orch.run(session_id, prompt)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    apply_cli_overrides(config, args)

    setup_structured_logging(
        json_mode=str(config.get("logging.format", "human")).lower() == "json",
        level=str(config.get("logging.level", "WARNING")),
        log_file=config.get("logging.file"),
    )

    prompt = args.prompt
    if prompt is None:
        prompt = sys.stdin.read()
    prompt = prompt.strip()
    if not prompt:
        print("Error: no prompt given", file=sys.stderr)
        sys.exit(2)

    orch = build_orchestrator(config)
    try:
        result = asyncio.run(run_prompt(orch, prompt, sys.stdout if args.stream else None))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        if not args.stream:
            print(result.final_text)
        print(f"\n[{result.status.value}] {result.llm_steps} model turns, {result.tool_steps} tool calls",
              file=sys.stderr)
    sys.exit(0 if result.status == LoopStatus.DONE else 1)


if __name__ == "__main__":
    main()
