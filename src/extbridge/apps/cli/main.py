import typer

from extbridge.apps.cli.commands.bridge import app
from extbridge.build_info import BUILD_INFO


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"extbridge {BUILD_INFO.version} ({BUILD_INFO.build_date})")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    """Local WebSocket bridge between an orchestration caller and the browser extension."""


if __name__ == "__main__":
    app()
