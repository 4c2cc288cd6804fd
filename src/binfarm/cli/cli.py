"""CLI application for the binfarm build orchestrator."""

import typer

from binfarm.cli.commands.build import build
from binfarm.cli.commands.locks import locks_app
from binfarm.cli.commands.manifest import manifest
from binfarm.cli.commands.platforms import platforms

app = typer.Typer(
    help="binfarm - build one project on many machines at once",
    no_args_is_help=True,
)

app.command("build")(build)
app.command("platforms")(platforms)
app.command("manifest")(manifest)
app.add_typer(locks_app, name="locks")


if __name__ == "__main__":
    app()
