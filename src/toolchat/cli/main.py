"""
Main CLI application for toolchat.

Provides the command-line interface for serving the chat API and for
inspecting configuration and tool result handling.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn
import yaml
from fastapi import FastAPI

from toolchat.api.server import HeaderIdentityProvider, create_app
from toolchat.lib.config import ConfigurationError, initialize_config
from toolchat.lib.logging_config import get_audit_logger, setup_logging
from toolchat.lib.metrics import initialize_metrics
from toolchat.lib.observability import initialize_telemetry, shutdown_telemetry
from toolchat.models import toolkit_of
from toolchat.services.chat_orchestrator import ChatOrchestrator
from toolchat.services.memory_store import InMemoryChatStore
from toolchat.services.providers import ProviderLoadingError, load_inference_provider, load_tool_executor
from toolchat.services.result_sanitizer import get_sanitization_stats
from toolchat.services.stream_context import StreamContextProvider
from toolchat.services.tool_parsers import parse_tool_response


logger = logging.getLogger("toolchat.cli")
audit_logger = get_audit_logger()


class ToolchatApplication:
    """Composition root: builds the orchestrator and its collaborators."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_path = config_path
        self.debug = debug
        self.config_manager = None
        self.app: Optional[FastAPI] = None
        self.orchestrator: Optional[ChatOrchestrator] = None
        self._shutdown_event = asyncio.Event()

    def initialize(self) -> None:
        """Load configuration and wire every service."""
        try:
            self.config_manager = initialize_config(self.config_path)
            config = self.config_manager.get_config()
            if self.debug:
                config.debug = True
                config.logging.level = "DEBUG"

            setup_logging(config.logging.model_dump())
            logger.info("Logging configured")

            if config.observability.enabled:
                telemetry_manager = initialize_telemetry(config.observability.model_dump())
                initialize_metrics(telemetry_manager.get_meter())
                logger.info("Observability initialized")

            store = InMemoryChatStore()
            self.orchestrator = ChatOrchestrator(
                store=store,
                inference=load_inference_provider(config.inference.provider, config.inference.options),
                tools=load_tool_executor(config.inference.tool_executor),
                config=config,
                streams=StreamContextProvider.from_config(
                    config.streams.enabled,
                    config.streams.journal_directory,
                    detach_grace_seconds=config.streams.detach_grace_seconds,
                    journal_retention_seconds=config.streams.journal_retention_seconds,
                ),
            )
            self.app = create_app(self.orchestrator, HeaderIdentityProvider(), config)

            audit_logger.log_turn_event(
                event_type="system_startup",
                chat_id="system",
                result="success",
                metadata={
                    "config_path": config.config_file_path,
                    "inference_provider": config.inference.provider,
                    "resumable_streams": config.streams.enabled,
                }
            )
            logger.info("toolchat application initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize toolchat application: {e}")
            audit_logger.log_turn_event(
                event_type="system_startup",
                chat_id="system",
                result="failed",
                metadata={"error": str(e)}
            )
            raise

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run_server(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the HTTP server until a shutdown signal arrives."""
        self.initialize()
        config = self.config_manager.get_config()

        final_host = host or config.server.host
        final_port = port or config.server.port
        logger.info(f"Starting toolchat server on {final_host}:{final_port}")

        self.setup_signal_handlers()

        server = uvicorn.Server(uvicorn.Config(
            app=self.app,
            host=final_host,
            port=final_port,
            log_config=None,
            access_log=False
        ))

        try:
            await self._run_with_shutdown(server)
        finally:
            shutdown_telemetry()
            audit_logger.log_turn_event(event_type="system_shutdown", chat_id="system", result="success")
            logger.info("toolchat shutdown completed")

    async def _run_with_shutdown(self, server: uvicorn.Server) -> None:
        server_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED
        )

        if shutdown_task in done:
            server.should_exit = True
            await server_task
        else:
            shutdown_task.cancel()


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """toolchat: tool-augmented chat service."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


@cli.command()
@click.option('--host', default=None, help='Host to bind to (default from config)')
@click.option('--port', default=None, type=int, help='Port to bind to (default from config)')
@click.pass_context
def serve(ctx, host, port):
    """Start the chat API server."""
    try:
        app = ToolchatApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
        asyncio.run(app.run_server(host=host, port=port))
    except (ConfigurationError, ProviderLoadingError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error starting server: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the toolchat configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Service: {config.observability.service_name}")
        click.echo(f"Environment: {config.observability.environment}")
        click.echo(f"Inference provider: {config.inference.provider}")
        click.echo(f"User types configured: {len(config.entitlements)}")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")
        else:
            click.echo("\nNo warnings found.")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--output', '-o', type=click.Path(), help='Output file path')
@click.pass_context
def export_config(ctx, output):
    """Export the current configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config_dict = config_manager.get_config().model_dump(mode="json")

        if output:
            with open(output, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            click.echo(f"Configuration exported to: {output}")
        else:
            click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('result_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--tool', '-t', 'tool_slug', required=True, help='Tool slug that produced the result')
@click.option('--toolkit', '-k', default=None, help='Toolkit slug (default derived from the tool slug)')
@click.option('--stats/--no-stats', default=True, help='Print size and token statistics')
def sanitize(result_file, tool_slug, toolkit, stats):
    """Run the tool response pipeline over a saved JSON result."""
    try:
        raw = json.loads(result_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        click.echo(f"Cannot read {result_file}: {e}", err=True)
        sys.exit(1)

    parsed = parse_tool_response(tool_slug, toolkit or toolkit_of(tool_slug), raw)
    click.echo(json.dumps(parsed, indent=2, ensure_ascii=False, default=str))

    if stats:
        click.echo("\nStatistics:", err=True)
        for key, value in get_sanitization_stats(raw, parsed).items():
            click.echo(f"  {key}: {value}", err=True)


if __name__ == '__main__':
    cli()
