# /askgate/app.py
"""
Command-line entry point for AskGate.

    askgate serve              start the web service (uvicorn)
    askgate ask "question"     ask the assistant from the terminal, streaming the answer
"""
import argparse
import asyncio
import getpass
import sys

from rich.panel import Panel

from .config import (
    ASSISTANT_CMD,
    ASSISTANT_PROMPT_FLAG,
    ASSISTANT_STREAM_ARGS,
    DB_PATH,
    HOST,
    INVOCATION_TIMEOUT_S,
    KB_DB_PATH,
    PORT,
    PROJECT_ROOT,
    STORAGE_DIR,
    console,
)
from .history_log import HistoryLog
from .invocation import EmptyQuestionError, InvocationError, InvocationManager
from .knowledge_base import KnowledgeBase
from .metrics import metrics_collector


def display_welcome_banner(host: str, port: int):
    """Displays the service banner."""
    console.print(Panel(
        f"[bold magenta]AskGate[/bold magenta] listening on [cyan]http://{host}:{port}[/cyan]\n"
        f"Project root: {PROJECT_ROOT}\n"
        f"Assistant: echo \"<question>\" | {' '.join(ASSISTANT_CMD)} {ASSISTANT_PROMPT_FLAG}",
        title="Server Started",
        border_style="green",
        expand=False,
    ))


def serve(host: str, port: int):
    import uvicorn

    display_welcome_banner(host, port)
    uvicorn.run("askgate.api_server:app", host=host, port=port)


async def _ask(question: str, username: str, use_kb: bool, stream: bool) -> int:
    history = HistoryLog(DB_PATH)
    knowledge_base = KnowledgeBase(STORAGE_DIR, KB_DB_PATH)
    manager = InvocationManager(
        ASSISTANT_CMD,
        PROJECT_ROOT,
        history,
        timeout_s=INVOCATION_TIMEOUT_S,
        prompt_flag=ASSISTANT_PROMPT_FLAG,
        stream_args=ASSISTANT_STREAM_ARGS,
        metrics=metrics_collector,
    )
    try:
        inv = manager.open_invocation(username, question)
        if use_kb:
            inv.prompt = knowledge_base.augment_prompt(question)

        if not stream:
            try:
                result = await manager.run_buffered(inv)
            except InvocationError as exc:
                console.print(f"[bold red]{exc.error}[/bold red]")
                console.print(exc.detail, markup=False, highlight=False)
                return 1
            console.print(result.answer, markup=False, highlight=False)
            return 0

        exit_status = 0
        async for event in manager.stream(inv):
            if event.kind == "delta":
                console.print(event.data["text"], end="", markup=False, highlight=False, soft_wrap=True)
            elif event.kind == "done":
                console.print(f"\n[dim]Done in {event.data['duration']}s[/dim]")
            else:
                console.print(f"\n[bold red]{event.data['error']}[/bold red]")
                if event.data.get("detail"):
                    console.print(event.data["detail"], markup=False, highlight=False)
                exit_status = 1
        return exit_status
    finally:
        history.close()
        knowledge_base.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="askgate", description="Web front-end for a command-line AI assistant")
    commands = parser.add_subparsers(dest="command", required=True)

    serve_parser = commands.add_parser("serve", help="run the web service")
    serve_parser.add_argument("--host", default=HOST)
    serve_parser.add_argument("--port", type=int, default=PORT)

    ask_parser = commands.add_parser("ask", help="ask one question from the terminal")
    ask_parser.add_argument("question")
    ask_parser.add_argument("--user", default=getpass.getuser())
    ask_parser.add_argument("--kb", action="store_true", help="prepend knowledge-base documents")
    ask_parser.add_argument("--no-stream", action="store_true", help="wait for the full answer")

    args = parser.parse_args(argv)
    if args.command == "serve":
        serve(args.host, args.port)
        return 0

    try:
        return asyncio.run(_ask(args.question, args.user, args.kb, stream=not args.no_stream))
    except EmptyQuestionError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        return 2
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
