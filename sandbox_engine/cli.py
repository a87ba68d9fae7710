"""
CLI for the sandbox engine

This module provides a command-line interface to run payloads in the
sandbox, produce the runtime image and serve the HTTP API.
"""

import argparse
import asyncio
import sys
import uuid

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config.settings import Settings
from .errors import SandboxError
from .logging_config import setup_logging
from .sandbox.image import build_runtime_image, generate_dockerfile
from .schemas.execution import ExecutionResult, Language, OutputStream
from .sessions.manager import create_sandbox_manager

console = Console()


async def _run_payload(
    settings: Settings,
    language: Language,
    payload: str,
    session_id: str,
    timeout_ms: int | None,
    stream: bool,
) -> ExecutionResult:
    manager = create_sandbox_manager(settings)
    await manager.startup()

    subscription = manager.relay.subscribe(session_id) if stream else None

    async def echo() -> None:
        async for chunk in subscription:
            style = "red" if chunk.stream == OutputStream.STDERR else None
            console.print(chunk.data, end="", style=style, markup=False, highlight=False)

    echo_task = asyncio.create_task(echo()) if subscription else None
    try:
        request = manager.build_request(language, payload, session_id, timeout_ms)
        return await manager.execute(request)
    finally:
        if subscription:
            subscription.close()
        if echo_task:
            await echo_task
        await manager.shutdown()


def _print_result(result: ExecutionResult, streamed: bool) -> None:
    if not streamed:
        if result.stdout:
            console.print(result.stdout, end="", markup=False, highlight=False)
        if result.stderr:
            console.print(result.stderr, end="", style="red", markup=False, highlight=False)

    table = Table.grid(padding=(0, 2))
    table.add_row("[bold]Exit code[/bold]", str(result.exit_code))
    table.add_row("[bold]Duration[/bold]", f"{result.duration_ms}ms")
    table.add_row("[bold]Execution[/bold]", result.execution_id or "-")
    if result.timed_out:
        table.add_row("[bold]Timed out[/bold]", "yes")
    if result.error:
        table.add_row("[bold]Error[/bold]", result.error)

    console.print()
    console.print(Panel(
        table,
        title="[bold green]Success[/bold green]" if result.success else "[bold red]Failed[/bold red]",
        border_style="green" if result.success else "red",
    ))


def run_command(args, language: Language):
    """Run a payload in the sandbox."""
    settings = Settings.from_env()
    setup_logging(args.log_level or settings.server.log_level, "text")

    errors = settings.validate()
    if errors:
        for error in errors:
            console.print(f"[red]Configuration error: {error}[/red]")
        sys.exit(2)

    session_id = args.session or f"cli-{uuid.uuid4().hex[:8]}"
    stream = not args.no_stream

    try:
        result = asyncio.run(_run_payload(
            settings, language, args.payload, session_id, args.timeout_ms, stream
        ))
    except SandboxError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        sys.exit(2)

    _print_result(result, streamed=stream)
    sys.exit(0 if result.success else 1)


def dockerfile_command(args):
    """Write the runtime image Dockerfile."""
    path = generate_dockerfile(args.output)
    console.print(f"Wrote {path}")


def build_image_command(args):
    """Build the runtime image."""
    settings = Settings.from_env()
    setup_logging(settings.server.log_level, "text")
    dockerfile = generate_dockerfile(args.dockerfile)
    ok = asyncio.run(build_runtime_image(
        dockerfile_path=dockerfile,
        image_name=args.tag or settings.sandbox.image,
        docker_binary=settings.sandbox.docker_binary,
    ))
    sys.exit(0 if ok else 1)


def serve_command(args):
    """Serve the HTTP API."""
    import uvicorn

    from .api.app import create_app

    settings = Settings.from_env()
    setup_logging(settings.server.log_level, settings.server.log_format)

    errors = settings.validate()
    if errors:
        for error in errors:
            console.print(f"[red]Configuration error: {error}[/red]")
        sys.exit(2)

    uvicorn.run(
        create_app(settings),
        host=args.host or settings.server.host,
        port=args.port or settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


def version_command(args):
    """Show version."""
    console.print(f"sandbox-engine version {__version__}")


def _add_payload_parser(subparsers, name: str, help_text: str, language: Language) -> None:
    parser = subparsers.add_parser(name, help=help_text)
    parser.add_argument("payload", help="Command or source code to execute")
    parser.add_argument("-s", "--session", help="Session id (default: generated)")
    parser.add_argument("-t", "--timeout-ms", type=int, help="Timeout in milliseconds")
    parser.add_argument("--no-stream", action="store_true", help="Print output only after completion")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL)")
    parser.set_defaults(func=lambda args: run_command(args, language))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="sandbox-engine",
        description="Run shell, Python and Node.js payloads in isolated containers",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_payload_parser(subparsers, "exec", "Execute a shell command", Language.SHELL)
    _add_payload_parser(subparsers, "python", "Execute Python code", Language.PYTHON)
    _add_payload_parser(subparsers, "node", "Execute JavaScript code", Language.NODE)

    dockerfile_parser = subparsers.add_parser("dockerfile", help="Write the runtime image Dockerfile")
    dockerfile_parser.add_argument("-o", "--output", default="Dockerfile", help="Output path")
    dockerfile_parser.set_defaults(func=dockerfile_command)

    build_parser = subparsers.add_parser("build-image", help="Build the runtime image")
    build_parser.add_argument("-f", "--dockerfile", default="Dockerfile", help="Dockerfile path to write and build")
    build_parser.add_argument("--tag", help="Image tag (default: SANDBOX_IMAGE)")
    build_parser.set_defaults(func=build_image_command)

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve_parser.add_argument("--host", help="Bind address (default: HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default: PORT)")
    serve_parser.set_defaults(func=serve_command)

    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=version_command)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
