"""
Chronofuse CLI - Main Entry Point

Command-line interface for multi-sensor temporal alignment and fusion.
Built with Click for robust argument parsing and help generation.
"""

import sys
import logging
from pathlib import Path
from typing import Optional

import click

from chronofuse import __version__
from chronofuse.config import FusionConfig, load_config

# Configure logging for CLI
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cfuse")


class ChronofuseContext:
    """Context object for passing global options to subcommands."""

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        config_path: Optional[Path] = None,
    ):
        self.verbose = verbose
        self.quiet = quiet
        self.config_path = config_path
        self._config: Optional[FusionConfig] = None

        # Library loggers follow the CLI verbosity
        if quiet:
            level = logging.WARNING
        elif verbose:
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.setLevel(level)
        logging.getLogger("chronofuse").setLevel(level)

    @property
    def config(self) -> FusionConfig:
        """Lazy load fusion configuration from file, defaults and environment."""
        if self._config is None:
            self._config = load_config(str(self.config_path) if self.config_path else None)
            if self.verbose and self.config_path:
                logger.debug(f"Loaded config from {self.config_path}")
        return self._config


# Custom Click group with enhanced help formatting
class CfuseGroup(click.Group):
    """Custom Click group with improved help formatting."""

    def format_help(self, ctx, formatter):
        """Format help with custom banner and examples."""
        formatter.write_paragraph()
        formatter.write_text("Chronofuse - Multi-Sensor Temporal Alignment and Fusion")
        formatter.write_paragraph()
        formatter.write_text(
            "Correct, align and fuse sensor streams into one trusted estimate."
        )
        formatter.write_paragraph()

        super().format_help(ctx, formatter)

        formatter.write_paragraph()
        formatter.write_text("Examples:")
        formatter.indent()

        examples = [
            "# Fuse a bundle with Levenberg-Marquardt refinement",
            "cfuse fuse --input bundle.json",
            "",
            "# Fuse with EM calibration and persistent trust history",
            "cfuse fuse --input bundle.yaml --algorithm em_calibration --store ./calib/",
            "",
            "# Align one sensor stream to another",
            "cfuse align --input bundle.json --reference gps-1 --target station-2",
            "",
            "# Estimate sensor biases from co-located readings",
            "cfuse calibrate --input readings.json --format json",
            "",
            "# Show trust history",
            "cfuse trust --store ./calib/ --sensor station-2",
        ]

        for line in examples:
            formatter.write_text(line)

        formatter.dedent()


pass_context = click.make_pass_decorator(ChronofuseContext, ensure=True)


@click.group(cls=CfuseGroup)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=False,
    help="Enable verbose output (debug logging).",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    default=False,
    help="Quiet mode (only warnings and errors).",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to fusion configuration file.",
)
@click.version_option(
    version=__version__,
    prog_name="cfuse",
    message="%(prog)s version %(version)s - Chronofuse CLI",
)
@click.pass_context
def app(ctx, verbose: bool, quiet: bool, config_path: Optional[Path]):
    """
    Chronofuse CLI - Multi-Sensor Fusion

    Removes physical timestamp delays, aligns irregular sensor streams
    with dynamic time warping and fuses them with trust-weighted
    consensus, Levenberg-Marquardt or EM calibration.
    """
    if verbose and quiet:
        raise click.UsageError("Cannot use both --verbose and --quiet")

    ctx.obj = ChronofuseContext(
        verbose=verbose,
        quiet=quiet,
        config_path=config_path,
    )


def register_commands():
    """Register all subcommands."""
    from cli.commands import fuse, align, calibrate, trust

    app.add_command(fuse.fuse)
    app.add_command(align.align)
    app.add_command(calibrate.calibrate)
    app.add_command(trust.trust)


@app.command("info")
@pass_context
def info(ctx):
    """Display system information and configuration."""
    import importlib.metadata
    import platform

    click.echo("\n=== Chronofuse System Info ===\n")

    click.echo(f"Python: {platform.python_version()}")
    click.echo(f"Platform: {platform.system()} {platform.release()}")
    click.echo(f"Chronofuse: {__version__}")

    click.echo("\n--- Package Versions ---")
    for pkg in ["numpy", "scipy", "PyYAML", "click"]:
        try:
            click.echo(f"  {pkg}: {importlib.metadata.version(pkg)}")
        except importlib.metadata.PackageNotFoundError:
            click.echo(f"  {pkg}: not installed")

    click.echo("\n--- Fusion Configuration ---")
    config = ctx.config
    for key, value in config.to_dict().items():
        click.echo(f"  {key}: {value}")

    click.echo()


register_commands()


def main():
    """Main entry point for the CLI."""
    try:
        app()
    except Exception as e:
        logger.error(f"Error: {e}")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
