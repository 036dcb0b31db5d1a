"""Configuration command for LiveChart CLI."""

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from livechart.config import config_path, create_template_config, load_settings
from livechart.errors import ConfigError

console = Console()


@click.command()
@click.option("--init", "init_", is_flag=True, help="Write a config file with all defaults.")
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
def config(init_: bool, force: bool) -> None:
    """Show the active configuration or create a config file.

    \b
    Examples:
      livechart config            # Show effective settings
      livechart config --init     # Create ~/.config/livechart/config.toml
    """
    path = config_path()

    if init_:
        if path.exists() and not force:
            console.print(Panel(
                f"[yellow]Configuration already exists at:[/yellow]\n"
                f"[cyan]{path}[/cyan]\n\n"
                "[dim]Use --force to overwrite it.[/dim]",
                title="[bold yellow]Config Exists[/bold yellow]",
                border_style="yellow",
            ))
            return

        written = create_template_config(path)
        console.print(Panel(
            f"[green]✓[/green] Configuration written to\n[cyan]{written}[/cyan]",
            title="[bold green]Config Created[/bold green]",
            border_style="green",
        ))
        return

    try:
        settings = load_settings(path)
    except ConfigError as e:
        console.print(Panel(
            f"[red]{e}[/red]",
            title="[bold red]Configuration Error[/bold red]",
            border_style="red",
        ))
        raise SystemExit(1)

    source_note = str(path) if path.exists() else f"{path} [dim](not found, using defaults)[/dim]"

    table = Table(
        title="LiveChart Settings",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Key", style="bold")
    table.add_column("Value", justify="right")

    for section, values in settings.model_dump().items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value))

    console.print(f"[dim]Config file: {source_note}[/dim]")
    console.print(table)
