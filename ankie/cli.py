# ankie/cli.py

import sys
import json
import uuid
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv

from ankie.backends.model_gateway import ModelFactory
from ankie.boot.env_vars import EnvConfig
from ankie.boot.load_settings import AppConfigLoader, resolve_path
from ankie.orchestration.errors import OrchestrationError
from ankie.orchestration.orchestrator import Orchestrator
from ankie.orchestration.registry import AgentRegistry
from ankie.orchestration.schema import ExecutionResult, ExecutionStep, HumanInterrupt, HumanResponse


# ──────────────────────────────────────────────────────────────────────────────
# UI helpers
# ──────────────────────────────────────────────────────────────────────────────

def _box(title: str) -> str:
    """Return a single-line title in a lightweight box."""
    pad = f"  {title.strip()}  "
    return f"┌{'─' * len(pad)}┐\n│{pad}│\n└{'─' * len(pad)}┘"

def _rule(text: str = "") -> str:
    """Horizontal rule with optional label."""
    label = f" {text.strip()} " if text else ""
    line = "─" * max(4, 72 - len(label))
    return f"{label}{line}"

def _print_welcome(agent_name: str, thread_id: str) -> None:
    print(_box(f"Ankie • {agent_name}"))
    print(f"Thread {thread_id}. Type ':quit' to exit.\n")

def _print_step(step: ExecutionStep) -> None:
    print(f"  [{step.progress:>3}%] {step.content}")

def _print_footer() -> None:
    print(_rule())


# ──────────────────────────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────────────────────────

def setup_logging(runtime_cfg: Dict[str, Any], *, verbose: bool = False, debug: bool = False) -> None:
    """
    Initialize application logging using config values and verbosity flags.

    Args:
        runtime_cfg: Merged configuration dictionary.
        verbose: If True, log INFO and above to console.
        debug: If True, log DEBUG and above to console (overrides verbose).
    """
    log_cfg = runtime_cfg.get("logging", {})
    fmt = log_cfg.get("format", "%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    logfile = resolve_path(log_cfg.get("file", "logs/ankie.log"))
    base_level = log_cfg.get("level", "WARNING").upper()

    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = getattr(logging, base_level, logging.WARNING)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    formatter = logging.Formatter(fmt)

    if verbose or debug:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        root.addHandler(ch)

    Path(logfile).parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(logfile)
    fh.setFormatter(formatter)
    root.addHandler(fh)


# ──────────────────────────────────────────────────────────────────────────────
# Inspection commands
# ──────────────────────────────────────────────────────────────────────────────

def cmd_agents(app_cfg: Dict[str, Any]) -> int:
    """
    List the configured agents and who each one may delegate to.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        registry = AgentRegistry.from_yaml(app_cfg.get("agents_file", "settings/agents.yaml"), app_cfg.get("supervisor_id"))
    except Exception as exc:
        logging.error("Failed to load agents: %s", exc)
        print(_box("Agent definitions could not be loaded"))
        return 1

    print(_box(" Agents "))
    for agent in registry.list_agents():
        targets = ", ".join(t.id for t in registry.delegation_targets(agent)) or "-"
        print(f"• {agent.id:<18} | {agent.role:<10} | {agent.model:<22} → {targets}")
    return 0


def cmd_check_models(app_cfg: Dict[str, Any]) -> int:
    """
    Show which provider families have credentials and how each agent's model resolves.

    Returns:
        0 when every agent resolves to a buildable model, 1 otherwise.
    """
    env = EnvConfig()
    print(_box(" Providers "))
    for provider, ok in env.configured_providers().items():
        print(f"• {provider:<10} | {'configured' if ok else 'missing ' + env.key_var(provider)}")

    factory = ModelFactory(app_cfg.get("models"), env=env)
    registry = AgentRegistry.from_yaml(app_cfg.get("agents_file", "settings/agents.yaml"), app_cfg.get("supervisor_id"))
    status = 0
    print(f"\n{_box(' Agent models ')}")
    for agent in registry.list_agents():
        try:
            handle = factory.get_model(agent.model)
            chain = " → ".join([handle.model_name] + handle.fallback_names)
            print(f"• {agent.id:<18} | {chain}")
        except OrchestrationError as exc:
            logging.error("Model for %s unavailable: %s", agent.id, exc)
            print(f"• {agent.id:<18} | unavailable ({exc})")
            status = 1
    return status


# ──────────────────────────────────────────────────────────────────────────────
# Chat
# ──────────────────────────────────────────────────────────────────────────────

def _ask_approval(request: HumanInterrupt) -> HumanResponse:
    """Prompt for a decision on a pending action until a valid one is given."""
    print(_box(f"Approval needed • {request.action_request.action} ({request.risk_level} risk)"))
    if request.description:
        print(request.description)
    print(json.dumps(request.action_request.args, indent=2, ensure_ascii=False))

    allowed = request.config
    choices = [
        name for name, ok in (
            ("accept", allowed.allow_accept),
            ("edit", allowed.allow_edit),
            ("reject", allowed.allow_ignore),
            ("respond", allowed.allow_respond),
        ) if ok
    ]
    while True:
        choice = input(f" {'/'.join(choices)} > ").strip().lower()
        if choice not in choices:
            continue
        if choice == "edit":
            raw = input(" new args (JSON) > ").strip()
            try:
                return HumanResponse(type="edit", args=json.loads(raw))
            except (ValueError, TypeError) as exc:
                print(f"Invalid args: {exc}")
                continue
        if choice == "respond":
            message = input(" reply > ").strip()
            if not message:
                continue
            return HumanResponse(type="respond", message=message)
        return HumanResponse(type=choice)


async def _consume(stream) -> Optional[ExecutionResult]:
    result = None
    async for item in stream:
        if isinstance(item, ExecutionStep):
            _print_step(item)
        else:
            result = item
    return result


async def _chat_loop(cfg: Dict[str, Any], *, thread_id: str, user_id: str, locale: Optional[str]) -> None:
    orchestrator = await Orchestrator.get_instance(cfg)
    agent = orchestrator.registry.get(orchestrator.registry.supervisor_id)
    _print_welcome(agent.name, thread_id)

    try:
        while True:
            try:
                print(_rule(" ask "))
                user_text = input(" - ").strip()
                _print_footer()
            except (EOFError, KeyboardInterrupt):
                print()
                break

            if user_text.lower() in {":quit", "exit", "quit"}:
                break
            if not user_text:
                continue

            try:
                result = await _consume(orchestrator.handle_turn(user_text, thread_id, user_id, locale=locale))
                while result is not None and result.status == "interrupted":
                    response = _ask_approval(result.interrupt)
                    result = await _consume(orchestrator.resume(
                        thread_id, result.execution_id, response,
                        checkpoint_id=result.checkpoint_id, user_id=user_id,
                    ))
            except OrchestrationError as exc:
                logging.warning("Turn rejected: %s", exc)
                print(_box(exc.user_message))
                continue

            print(_rule(" response "))
            if result is None:
                print("(no result)")
            elif result.status == "completed":
                print(result.content)
            else:
                if result.content:
                    print(result.content)
                print(f"[{result.status}] {result.error.message if result.error else ''}")
            _print_footer()
    finally:
        await Orchestrator.reset_instance()


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the CLI argument parser.
    """
    parser = argparse.ArgumentParser(description="Ankie multi-agent assistant (CLI)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # agents
    p_agents = subparsers.add_parser("agents", help="List configured agents and their delegation targets")
    p_agents.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p_agents.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")

    # check-models
    p_check = subparsers.add_parser("check-models", help="Verify provider credentials and model resolution")
    p_check.add_argument("--model", default=None, help="Default model name (overrides settings file)")
    p_check.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p_check.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")

    # chat
    p_chat = subparsers.add_parser("chat", help="Interactive session with the supervisor agent")
    p_chat.add_argument("--agent", default=None, help="Root agent id (overrides settings file)")
    p_chat.add_argument("--model", default=None, help="Default model name (overrides settings file)")
    p_chat.add_argument("--thread", default=None, help="Thread id to continue (a new one by default)")
    p_chat.add_argument("--user", default="cli-user", help="User id for this session")
    p_chat.add_argument("--locale", default=None, help="Progress message locale (es, en, fr, de)")
    p_chat.add_argument("--checkpoints", choices=["memory", "sqlite"], default=None, help="Checkpoint backend")
    p_chat.add_argument("--sqlite-path", dest="sqlite_path", default=None, help="SQLite checkpoint file")
    p_chat.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p_chat.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")

    return parser


def main() -> None:
    """
    Main entry point for the Ankie CLI.
    """
    parser = build_parser()
    args = parser.parse_args()

    # Merge config
    settings_loader = AppConfigLoader()
    cfg = settings_loader.merge_with_args(args)

    # Logging
    setup_logging(cfg, verbose=args.verbose, debug=args.debug)

    # Load .env (best-effort)
    try:
        load_dotenv()
        logging.info("Environment variables loaded from .env")
    except Exception as exc:
        logging.warning("Unable to load .env: %s", exc)

    if args.command == "agents":
        sys.exit(cmd_agents(cfg))

    if args.command == "check-models":
        sys.exit(cmd_check_models(cfg))

    if args.command == "chat":
        thread_id = args.thread or f"cli-{uuid.uuid4().hex[:8]}"
        asyncio.run(_chat_loop(cfg, thread_id=thread_id, user_id=args.user, locale=args.locale))
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
