"""
torrentwatch CLI
Search Jackett, pick a release and a file, stream it through webtorrent into
mpv and pick up where you left off next time.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich import box
from rich.panel import Panel
from rich.rule import Rule
from rich.traceback import install

from torrentwatch import __version__
from torrentwatch.bootstrap import (
    BootstrapError,
    ensure_rofi_themes,
    install_jackett,
    self_update,
    start_jackett,
)
from torrentwatch.config import (
    CONFIG_PATH,
    ConfigError,
    ProgramConfig,
    load_config,
    save_config,
)
from torrentwatch.history import HistoryError, WatchHistory, WatchRecord
from torrentwatch.jackett import APIError, JackettAPI, read_jackett_api_key
from torrentwatch.logger import console, setup_logging
from torrentwatch.metadata import ContentFile, MetadataError, TorrentInspector
from torrentwatch.mpv import PlayerError
from torrentwatch.selection import (
    SelectionError,
    SelectionOption,
    Selector,
    make_selector,
)
from torrentwatch.session import (
    SessionController,
    SessionOutcome,
    SessionState,
    WatchSession,
)
from torrentwatch.streaming import BridgeError, WebtorrentBridge
from torrentwatch.utils import format_duration

install()
app = typer.Typer(add_completion=False)
log = logging.getLogger(__name__)

NEW_SHOW = "new"
CONTINUE = "continue"


def fail(message: str, error: Optional[BaseException] = None) -> NoReturn:
    """Print an error panel and exit with status 1."""
    body = f"{message}: {error}" if error is not None else message
    console.print(
        Panel(body, title="[bold red]✗ Error[/bold red]", border_style="red")
    )
    log.debug("Exiting on error", exc_info=error is not None)
    raise typer.Exit(1)


def finish(message: str) -> NoReturn:
    """Print a message and exit cleanly."""
    if message:
        console.print(f"[yellow]{message}[/yellow]")
    raise typer.Exit(0)


def choose(
    selector: Selector, options: List[SelectionOption], prompt: str
) -> SelectionOption:
    """Run a selection, exiting cleanly when the user picks nothing."""
    try:
        selected = selector.select(options, prompt)
    except SelectionError as e:
        fail("Error showing selection menu", e)
    if selected is None:
        finish("No selection made, exiting")
    return selected


def jackett_client(config: ProgramConfig) -> JackettAPI:
    return JackettAPI(config.jackett_base_url, config.jackett_api_key)


def setup_jackett(
    config: ProgramConfig, config_path: Path, selector: Selector
) -> JackettAPI:
    """Make sure Jackett answers, offering to install or configure it if not."""
    api = jackett_client(config)
    if not api.is_available():
        log.debug("Jackett not available")
        if config.run_jackett_at_startup:
            try:
                start_jackett()
            except BootstrapError as e:
                log.warning("Failed to start Jackett: %s", e)
            api = jackett_client(config)

    if not api.is_available():
        options = [
            SelectionOption("install", "Install Jackett"),
            SelectionOption("configure", "Configure Jackett URL and API key manually"),
        ]
        selected = choose(selector, options, "Jackett is not reachable")
        try:
            if selected.key == "install":
                install_jackett()
                start_jackett()
                config.jackett_api_key = read_jackett_api_key()
            else:
                config.jackett_url = selector.ask("Enter Jackett URL (e.g., 127.0.0.1)")
                config.jackett_port = selector.ask("Enter Jackett Port (e.g., 9117)")
                config.jackett_api_key = selector.ask("Enter Jackett API Key")
            save_config(config_path, config)
        except (BootstrapError, APIError, ConfigError, SelectionError) as e:
            fail("Failed to set up Jackett", e)
        api = jackett_client(config)
        if not api.is_available():
            fail(f"Jackett is still not reachable at {api.base_url}")

    if config.run_jackett_at_startup and not config.jackett_api_key:
        log.info("Getting Jackett API key...")
        try:
            config.jackett_api_key = read_jackett_api_key()
            save_config(config_path, config)
        except (APIError, ConfigError) as e:
            fail("Failed to get Jackett API key", e)
        api = jackett_client(config)
    return api


def load_files(inspector: TorrentInspector, magnet_uri: str) -> List[ContentFile]:
    with console.status("[bold green]Fetching torrent metadata...", spinner="dots"):
        try:
            return inspector.get_files(magnet_uri)
        except MetadataError as e:
            fail("Failed to get torrent files", e)


def start_new_show(
    api: JackettAPI, selector: Selector, inspector: TorrentInspector
) -> WatchSession:
    """Search, pick a release and a file."""
    query = selector.ask("Enter search query")
    if not query:
        finish("No search query given, exiting")

    with console.status("[bold green]Searching...", spinner="dots"):
        try:
            results = api.search(query)
        except APIError as e:
            fail("Error searching Jackett", e)
    if not results:
        finish("No results found")

    options = [
        SelectionOption(str(i), r.title, seeders=r.seeders, tracker=r.tracker)
        for i, r in enumerate(results)
    ]
    selected = choose(selector, options, f"Results for '{query}'")
    release = results[int(selected.key)]
    log.debug("Selected: %s", release)

    try:
        magnet_uri = api.resolve_magnet(release)
    except APIError as e:
        fail("Failed to retrieve magnet URI", e)

    files = load_files(inspector, magnet_uri)
    if len(files) == 1:
        log.info("Only one file found, selecting automatically")
        chosen = files[0]
    else:
        file_options = [
            SelectionOption(str(i), f.display_name) for i, f in enumerate(files)
        ]
        chosen = files[int(choose(selector, file_options, "Select a file").key)]
    return WatchSession(magnet_uri, chosen.actual_index, files)


def continue_watching(
    records: List[WatchRecord], selector: Selector, inspector: TorrentInspector
) -> WatchSession:
    """Pick a history entry and resume it."""
    if not records:
        finish("No shows in watch history")
    options = [
        SelectionOption(str(i), f"{r.title} [{format_duration(r.playback_time)}]")
        for i, r in enumerate(records)
    ]
    record = records[int(choose(selector, options, "Continue watching").key)]

    files = load_files(inspector, record.content_id)
    session = WatchSession(record.content_id, record.file_index, files, resume=True)
    session.player.playback_time = record.playback_time
    log.info("Resuming %s at %d seconds", record.title, record.playback_time)
    return session


def show_state(state: SessionState, session: WatchSession) -> None:
    if state is SessionState.STARTING:
        console.print(f"[dim]→ Loading {session.current_title()}[/dim]")
    elif state is SessionState.PLAYING:
        console.print(f"[green]▶ Playing {session.current_title()}[/green]")


def play(
    session: WatchSession,
    config: ProgramConfig,
    history: WatchHistory,
    inspector: TorrentInspector,
) -> SessionOutcome:
    """Run the playback session, stopping cleanly on Ctrl+C or SIGTERM."""
    cancel = threading.Event()
    bridge = WebtorrentBridge(config.storage_dir, inspector, cancel_event=cancel)
    controller = SessionController(
        config, bridge, history, on_state_change=show_state, cancel_event=cancel
    )
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: controller.cancel())
    try:
        return controller.run(session)
    except KeyboardInterrupt:
        controller.cancel()
        return SessionOutcome.CANCELLED
    except (BridgeError, PlayerError) as e:
        fail("Failed to stream torrent", e)
    finally:
        signal.signal(signal.SIGTERM, previous)


@app.command()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    rofi: bool = typer.Option(False, "--rofi", help="Open selection in rofi"),
    no_rofi: bool = typer.Option(False, "--no-rofi", help="Never use rofi"),
    update: bool = typer.Option(False, "--update", "-u", help="Update the program"),
    edit: bool = typer.Option(
        False, "--edit", "-e", help="Edit the configuration file"
    ),
    save_mpv_speed: Optional[bool] = typer.Option(
        None,
        "--save-mpv-speed/--no-save-mpv-speed",
        help="Carry the mpv playback speed over to the next episode",
    ),
    config_path: Path = typer.Option(
        CONFIG_PATH, "--config", help="Path to the configuration file"
    ),
) -> None:
    """🎬 Search, stream and resume torrent video."""
    setup_logging(debug)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        fail("Failed to load config", e)

    if update:
        try:
            self_update()
        except BootstrapError as e:
            fail("Error updating", e)
        finish("Program Updated!")

    if edit:
        editor = os.environ.get("EDITOR", "vim")
        try:
            subprocess.run([editor, str(config_path)], check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            fail(f"Failed to open config in {editor}", e)
        return

    if save_mpv_speed is not None:
        config.save_mpv_speed = save_mpv_speed
    if rofi:
        config.rofi_selection = True
    if no_rofi or not sys.platform.startswith("linux"):
        config.rofi_selection = False

    if config.rofi_selection:
        try:
            ensure_rofi_themes(config.storage_dir)
        except BootstrapError as e:
            fail("Error checking and downloading files", e)

    console.print(Rule(f"[bold cyan]🎬 torrentwatch {__version__}[/bold cyan]"))
    selector = make_selector(config, console)
    api = setup_jackett(config, config_path, selector)
    log.debug("Config loaded successfully: %s", config)

    history = WatchHistory(config.history_file)
    try:
        records = history.get_all()
    except HistoryError as e:
        log.warning("Could not read watch history: %s", e)
        records = []

    inspector = TorrentInspector()
    start = choose(
        selector,
        [
            SelectionOption(NEW_SHOW, "Start New Show"),
            SelectionOption(CONTINUE, "Continue Watching"),
        ],
        "torrentwatch",
    )
    if start.key == NEW_SHOW:
        session = start_new_show(api, selector, inspector)
    else:
        session = continue_watching(records, selector, inspector)
    log.debug("Magnet URI: %s", session.content_id)

    outcome = play(session, config, history, inspector)
    console.print(
        Panel(
            f"[cyan]Last file:[/cyan] {session.current_title()}\n"
            f"[cyan]Position:[/cyan] {format_duration(session.player.playback_time)}\n"
            f"[dim]{outcome.value.capitalize()}[/dim]",
            title="[bold green]Session ended[/bold green]",
            border_style="green",
            box=box.ROUNDED,
        )
    )


def run() -> None:
    app()


if __name__ == "__main__":
    run()
