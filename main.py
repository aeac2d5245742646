#!/usr/bin/env python3
"""
Sleuth - tool-calling investigation agent for ephemeral deployment environments.
Local CLI: stream one turn to the terminal, or list the tools a session would get.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Dict

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep agent imports lazy (inside functions) so `--help` works without the LLM stack.
#


def _printing_sink(auto_confirm: bool):
    from sleuth.streaming.events import EventSink

    class PrintingSink(EventSink):
        def on_text_chunk(self, text: str) -> None:
            sys.stdout.write(text)
            sys.stdout.flush()

        def on_thinking(self, message: str) -> None:
            print(f"\n… {message}", file=sys.stderr)

        def on_tool_call(self, name: str, args: Dict[str, Any], tool_call_id: str) -> None:
            print(f"\n→ {name} {json.dumps(args, default=str)[:200]}", file=sys.stderr)

        def on_activity(self, event: Any) -> None:
            if event.status != "pending":
                mark = "✓" if event.status == "completed" else "✗"
                print(f"  {mark} {event.tool} ({event.duration_ms}ms) {event.preview}", file=sys.stderr)

        def on_error(self, error: Any) -> None:
            print(f"\n❌ {getattr(error, 'user_message', error)}", file=sys.stderr)

        async def on_tool_confirmation(self, details: Dict[str, Any]) -> bool:
            if auto_confirm:
                return True
            args = json.dumps(details.get("args"))
            print(f"\n⚠️  {details.get('tool')} wants to run with {args}", file=sys.stderr)
            answer = await asyncio.to_thread(input, "Allow? [y/N] ")
            return answer.strip().lower() in ("y", "yes")

    return PrintingSink()


async def ask(args: argparse.Namespace) -> int:
    from sleuth.authz.policy import FixTargetScope
    from sleuth.config import load_agent_config
    from sleuth.core.context import AgentContext
    from sleuth.llm.providers.factory import create_provider
    from sleuth.prompts import SessionContext
    from sleuth.service import AgentError, AgentService

    cfg = load_agent_config()
    context = AgentContext(cfg)
    provider = create_provider(args.provider or cfg.provider, args.model or cfg.model)
    service = AgentService(context, provider=provider, mode=args.mode or cfg.mode)
    session = SessionContext(
        repository_owner=args.owner or "",
        repository_name=args.repo or "",
        branch=args.branch,
        namespace=args.namespace,
    )
    scope = None
    if args.mode == "fix":
        scope = FixTargetScope(
            service_name=args.service,
            files=[{"path": p} for p in args.file or []],
            auto_fix_action=args.action,
        )
    session_id = args.session or uuid.uuid4().hex

    try:
        result = await service.process_query(
            session_id, args.question, _printing_sink(args.yes), scope=scope, session=session
        )
    except AgentError as e:
        print(f"code={e.code} retryable={e.retryable}", file=sys.stderr)
        return 1
    finally:
        await context.close()

    if result["is_json"]:
        print(json.dumps(json.loads(result["response"]), indent=2))
    else:
        print()
    print(f"session={session_id} metrics={json.dumps(result['metrics'])}", file=sys.stderr)
    return 0


def list_tools(args: argparse.Namespace) -> int:
    from sleuth.config import load_agent_config
    from sleuth.service import builtin_tools
    from sleuth.tools.database import DatabaseClient
    from sleuth.tools.github import GitHubClient

    cfg = load_agent_config()
    tools = builtin_tools(
        args.mode or cfg.mode,
        github=GitHubClient(),
        database=DatabaseClient(cfg.database_url),
        excluded=cfg.excluded_tools,
    )
    for t in tools:
        print(f"{t.name:<22} {t.safety_level.value:<10} {t.category.value:<9} {t.description[:80]}")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Investigate ephemeral environments with a tool-calling agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ask a question (streams the answer)
  python main.py ask "why is the api deployment not ready?" --namespace env-abc123

  # Continue a conversation
  python main.py ask "check its logs" --session 5f2c...

  # List tools
  python main.py tools --mode fix
        """,
    )
    sub = parser.add_subparsers(dest="command")

    p_ask = sub.add_parser("ask", help="Run one conversational turn")
    p_ask.add_argument("question", help="The question to investigate")
    p_ask.add_argument("--provider", choices=["anthropic", "openai", "gemini"], help="LLM provider (default: env)")
    p_ask.add_argument("--model", help="Model id (default: provider default)")
    p_ask.add_argument("--mode", choices=["investigate", "fix"], help="Agent mode (default: env / investigate)")
    p_ask.add_argument("--session", help="Session id for multi-turn conversations")
    p_ask.add_argument("--namespace", help="Kubernetes namespace of the environment")
    p_ask.add_argument("--owner", help="Repository owner")
    p_ask.add_argument("--repo", help="Repository name")
    p_ask.add_argument("--branch", help="Working branch (the only branch fix mode may commit to)")
    p_ask.add_argument("--service", help="Fix mode: service the fix is scoped to")
    p_ask.add_argument("--file", action="append", help="Fix mode: file the fix may edit (repeatable)")
    p_ask.add_argument("--action", help="Fix mode: fix action hint, e.g. update_file or patch_k8s_resource")
    p_ask.add_argument("--yes", "-y", action="store_true", help="Confirm every tool without prompting")

    p_tools = sub.add_parser("tools", help="List the built-in tools for a mode")
    p_tools.add_argument("--mode", choices=["investigate", "fix"], help="Agent mode (default: env / investigate)")

    args = parser.parse_args()

    try:
        if args.command == "ask":
            sys.exit(asyncio.run(ask(args)))
        if args.command == "tools":
            sys.exit(list_tools(args))
        parser.print_help()
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
