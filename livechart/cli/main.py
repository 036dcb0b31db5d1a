"""Main CLI entry point for LiveChart.

This module provides the main click group and lazy loading
of command modules to keep startup fast.
"""

import click
from rich.console import Console

# Console for rich output
console = Console()


class LazyGroup(click.Group):
    """A click Group that lazily loads commands.

    Command modules are only imported when they are actually invoked.
    """

    def __init__(self, *args, lazy_subcommands: dict[str, str] | None = None, **kwargs):
        """Initialize the lazy group.

        Args:
            lazy_subcommands: Mapping of command names to module paths.
        """
        super().__init__(*args, **kwargs)
        self._lazy_subcommands = lazy_subcommands or {}

    def list_commands(self, ctx: click.Context) -> list[str]:
        """List all available commands."""
        base = super().list_commands(ctx)
        lazy = list(self._lazy_subcommands.keys())
        return sorted(set(base + lazy))

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        """Get a command by name, lazily loading if needed."""
        if cmd_name in self.commands:
            return self.commands[cmd_name]

        if cmd_name in self._lazy_subcommands:
            return self._lazy_load(cmd_name)

        return None

    def _lazy_load(self, cmd_name: str) -> click.Command:
        """Lazily load a command from its module path."""
        import importlib

        module_path = self._lazy_subcommands[cmd_name]
        module = importlib.import_module(module_path)

        attr = getattr(module, cmd_name, None)
        if not isinstance(attr, click.Command):
            raise click.ClickException(f"Could not find command '{cmd_name}' in {module_path}")

        self.add_command(attr)
        return attr


LAZY_SUBCOMMANDS = {
    "stream": "livechart.cli.stream",
    "config": "livechart.cli.config",
}


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


@click.group(cls=LazyGroup, lazy_subcommands=LAZY_SUBCOMMANDS, context_settings=CONTEXT_SETTINGS)
@click.version_option(package_name="livechart")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """LiveChart - real-time candlestick streaming in the terminal.

    Polls the latest candle for a symbol, keeps a bounded candle series
    up to date and renders the visible window of it.

    \b
    Quick Start:
      livechart config --init      # Write a config file with defaults
      livechart stream BTCUSDT     # Stream 1m candles (paper feed by default)
      livechart stream ETHUSDT -s binance -i 5m
    """
    from livechart.log import setup_logging

    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
