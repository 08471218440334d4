"""
Main CLI application for DAB (Diagnostic Agent Bridge).

Provides the interactive chat client, the bundled network diagnostics
provider and configuration utilities.
"""

import asyncio
import json
import logging
import sys
from typing import Optional, List

import click

from dab.lib.config import initialize_config, ConfigurationError, DABConfig, load_provider_specs
from dab.lib.logging_config import setup_logging, get_audit_logger
from dab.lib.observability import initialize_telemetry, shutdown_telemetry
from dab.lib.metrics import initialize_metrics, reset_metrics
from dab.models.errors import ProviderInitializationError
from dab.services.approval_gate import ApprovalGate
from dab.services.chat_session import ChatSession
from dab.services.credential_rotator import CredentialRotator
from dab.services.model_client import OpenAICompatibleClient
from dab.services.stream_broker import SSEEventTransport, StreamBroker
from dab.services.terminal import TerminalInterface
from dab.services.tool_provider import ToolProviderHandle


logger = logging.getLogger("dab.cli")


class DABApplication:
    """Main DAB application manager."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_path = config_path
        self.debug = debug
        self.config_manager = None
        self.config: Optional[DABConfig] = None
        self.telemetry_enabled = False
        self.audit_logger = get_audit_logger()

    def initialize(self, service_name: str = "dab-client") -> DABConfig:
        """Load configuration and set up logging and telemetry."""
        self.config_manager = initialize_config(self.config_path)
        config = self.config_manager.get_config()

        setup_logging(
            config.logging,
            service_name=service_name,
            level="DEBUG" if self.debug or config.debug else None
        )
        logger.info(f"Configuration loaded from {config.config_file_path}")

        if config.observability.enabled:
            component = "provider" if service_name.endswith("provider") else "client"
            telemetry_manager = initialize_telemetry(config.observability, component)
            initialize_metrics(telemetry_manager.meter())
            self.telemetry_enabled = True
            logger.info("Observability initialized")

        self.config = config
        return config

    def build_handles(self, gate: ApprovalGate) -> List[ToolProviderHandle]:
        specs = load_provider_specs(self.config.servers_config)
        return [
            ToolProviderHandle(
                spec,
                elicitation_callback=gate.elicitation_callback(),
                tool_call_timeout=self.config.session.tool_call_timeout,
                correlation_argument=self.config.streaming.correlation_argument
            )
            for spec in specs
        ]

    def build_session(self) -> ChatSession:
        """Wire the chat session from the loaded configuration."""
        config = self.config
        interface = TerminalInterface()
        gate = ApprovalGate(interface)

        prefixes = {name: settings.credential_prefix for name, settings in config.llm.providers.items()}
        rotator = CredentialRotator.from_environment(prefixes)
        if rotator.pool_size(config.llm.provider) == 0:
            logger.warning(f"No API keys configured for {config.llm.provider}")

        broker = None
        if config.streaming.enabled:
            broker = StreamBroker(
                SSEEventTransport(config.streaming.base_url, connect_timeout=config.streaming.connect_timeout),
                interface=interface,
                connect_timeout=config.streaming.connect_timeout
            )

        return ChatSession(
            handles=self.build_handles(gate),
            model_client=OpenAICompatibleClient(config.llm, rotator),
            interface=interface,
            gate=gate,
            broker=broker,
            streaming=config.streaming,
            config=config.session
        )

    async def run_chat(self) -> None:
        """Run one interactive chat session."""
        self.initialize()
        session = self.build_session()
        self.audit_logger.log_provider_event(
            "session_start", "all", "success",
            {"providers": [handle.id for handle in session.handles]}
        )
        try:
            await session.start()
        finally:
            self.audit_logger.log_provider_event("session_end", "all", "success")
            self.shutdown()

    async def list_tools(self) -> List[dict]:
        """Start every provider, collect the live catalog and stop them again."""
        self.initialize()
        gate = ApprovalGate(TerminalInterface())
        handles = self.build_handles(gate)
        session = ChatSession(handles, model_client=None, interface=TerminalInterface(), gate=gate)
        try:
            await session.initialize_providers()
            catalog = await session.catalog()
            return [
                {
                    "name": tool.name,
                    "provider": tool.provider_id,
                    "description": tool.description,
                    "supports_progress": tool.supports_progress
                }
                for tool in catalog.tools
            ]
        finally:
            await session.cleanup()
            self.shutdown()

    def shutdown(self) -> None:
        if self.telemetry_enabled:
            reset_metrics()
            shutdown_telemetry()
            self.telemetry_enabled = False


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """Diagnostic Agent Bridge (DAB) CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug


@cli.command()
@click.pass_context
def chat(ctx):
    """Start an interactive chat session."""
    app = DABApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
    try:
        asyncio.run(app.run_chat())
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except ProviderInitializationError as e:
        click.echo(f"Failed to start tool providers: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nExiting...")


@cli.command()
@click.option('--host', default=None, help='Host for the progress event server')
@click.option('--port', default=None, type=int, help='Port for the progress event server')
@click.pass_context
def provider(ctx, host, port):
    """Run the bundled network diagnostics provider on stdio."""
    # Imported here so the chat client does not load the server stack
    from dab.provider.server import run_provider

    app = DABApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
    try:
        config = app.initialize(service_name="dab-provider")
        final_host = host or config.streaming.host
        final_port = port or config.streaming.port
        asyncio.run(run_provider(host=final_host, port=final_port))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        app.shutdown()


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the DAB configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"LLM provider: {config.llm.provider} ({config.llm.active().model})")
        click.echo(f"Streaming: {'enabled at ' + config.streaming.base_url if config.streaming.enabled else 'disabled'}")
        click.echo(f"Provider configuration: {config.servers_config}")

        if not warnings:
            specs = load_provider_specs(config.servers_config)
            click.echo(f"Providers configured: {len(specs)}")
            for spec in specs:
                click.echo(f"  - {spec.id}: {spec.command} {' '.join(spec.args)}")

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
@click.option('--output-format', '-f', type=click.Choice(['json', 'text']), default='text', help='Output format')
@click.pass_context
def tools(ctx, output_format):
    """List the tools offered by the configured providers."""
    app = DABApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
    try:
        result = asyncio.run(app.list_tools())
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except ProviderInitializationError as e:
        click.echo(f"Failed to start tool providers: {e}", err=True)
        sys.exit(1)

    if output_format == 'json':
        click.echo(json.dumps(result, indent=2))
        return

    click.echo(f"Found {len(result)} tools:")
    for tool in result:
        progress = " [live progress]" if tool['supports_progress'] else ""
        click.echo(f"  {tool['name']} ({tool['provider']}){progress}")
        click.echo(f"    {tool['description']}")


if __name__ == '__main__':
    cli()
