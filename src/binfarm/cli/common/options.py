"""Common CLI options for the CLI."""

import typer

PlatformsArg = typer.Argument(
    None,
    help="Platform identifiers, e.g. linux-x86_64. None means every registered platform.",
    show_default=False,
)

RootOpt = typer.Option(
    None,
    "--root",
    "-r",
    help="Build root holding logs/, locks/ and archives/ (env: BINFARM_ROOT)",
    file_okay=False,
    show_default=False,
)

RegistryOpt = typer.Option(
    None,
    "--registry",
    help="JSON platform registry (env: BINFARM_REGISTRY)",
    dir_okay=False,
    show_default=False,
)

RefOpt = typer.Option(
    None,
    "--ref",
    help="Source revision to build (env: BINFARM_REF, default: master)",
    show_default=False,
)

StrategyOpt = typer.Option(
    None,
    "--strategy",
    help="Lock strategy: native or emulated (env: BINFARM_LOCK_STRATEGY)",
    show_default=False,
)

PollIntervalOpt = typer.Option(
    None,
    "--poll-interval",
    min=0.01,
    help="Seconds between lock attempts (env: BINFARM_POLL_INTERVAL)",
    show_default=False,
)

SelectOpt = typer.Option(
    False,
    "--select",
    "-s",
    help="Pick platforms interactively",
)

ProgressOpt = typer.Option(
    True,
    "--progress/--no-progress",
    help="Show live per-platform progress on a terminal",
)

VerboseOpt = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Debug logging on stderr",
)

YesOpt = typer.Option(
    False,
    "--yes",
    "-y",
    help="Don't ask for confirmation",
)
