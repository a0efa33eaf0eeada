"""
Selection menus.

Every prompt in the program goes through a ``Selector``: a paged rich table in
the terminal, or rofi when the user prefers a desktop picker.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from rich import box
from rich.console import Console
from rich.prompt import Prompt
from rich.rule import Rule
from rich.table import Table

from torrentwatch.config import ProgramConfig
from torrentwatch.utils import get_health_icon

log = logging.getLogger(__name__)

QUIT_LABEL = "Quit"


class SelectionError(Exception):
    """Raised when the selection UI itself fails"""

    pass


@dataclass
class SelectionOption:
    """One menu entry. ``key`` is what the caller gets back."""

    key: str
    label: str
    seeders: Optional[int] = None
    tracker: str = ""


def order_options(options: List[SelectionOption]) -> List[SelectionOption]:
    """Most seeded first when options carry seeders, otherwise as given."""
    if any(opt.seeders is not None for opt in options):
        return sorted(options, key=lambda opt: opt.seeders or 0, reverse=True)
    return list(options)


def filter_options(
    options: List[SelectionOption], text: str
) -> List[SelectionOption]:
    """Case-insensitive substring filter on labels."""
    needle = text.lower()
    return [opt for opt in options if needle in opt.label.lower()]


class Selector(ABC):
    """Capability interface shared by every selection UI."""

    @abstractmethod
    def select(
        self, options: List[SelectionOption], prompt: str = "Select"
    ) -> Optional[SelectionOption]:
        """Let the user pick one option. Returns None when nothing was picked."""

    @abstractmethod
    def ask(self, message: str) -> str:
        """Ask the user for free text."""


class ConsoleSelector(Selector):
    """Paged, filterable table rendered with rich."""

    def __init__(self, console: Console, page_size: int = 10):
        self.console = console
        self.page_size = page_size

    def select(
        self, options: List[SelectionOption], prompt: str = "Select"
    ) -> Optional[SelectionOption]:
        ordered = order_options(options)
        show_seeders = any(opt.seeders is not None for opt in ordered)
        query = ""
        page = 0
        while True:
            visible = filter_options(ordered, query) if query else ordered
            total_pages = max((len(visible) - 1) // self.page_size + 1, 1)
            page = min(page, total_pages - 1)
            start = page * self.page_size
            page_items = visible[start : start + self.page_size]

            self.console.print(Rule(f"[bold cyan]{prompt}[/bold cyan]"))
            title = f"Page {page + 1}/{total_pages}"
            if query:
                title += f" | Filter: '{query}'"
            tbl = Table(
                title=title,
                box=box.ROUNDED,
                show_header=True,
                header_style="bold cyan",
                border_style="blue",
            )
            tbl.add_column("#", style="dim", width=4)
            tbl.add_column("Name", style="white", no_wrap=False)
            if show_seeders:
                tbl.add_column("Seeds", justify="right", style="yellow")
                tbl.add_column("Health", justify="center")
                tbl.add_column("Tracker", justify="center", style="cyan")
            for i, opt in enumerate(page_items, start=start + 1):
                if show_seeders:
                    seeders = opt.seeders or 0
                    tbl.add_row(
                        str(i),
                        opt.label,
                        str(seeders),
                        get_health_icon(seeders),
                        opt.tracker,
                    )
                else:
                    tbl.add_row(str(i), opt.label)
            if not page_items:
                self.console.print("[yellow]No matches found.[/yellow]")
            else:
                self.console.print(tbl)

            action = Prompt.ask(
                "[cyan]Action[/cyan] [[bold]n[/bold]]ext | [[bold]p[/bold]]rev | "
                "[[bold]f[/bold]]ilter | [bold]number[/bold] | [[bold]q[/bold]]uit",
                console=self.console,
            ).strip()

            if action == "n":
                if start + self.page_size < len(visible):
                    page += 1
            elif action == "p":
                if page > 0:
                    page -= 1
            elif action == "f":
                query = Prompt.ask(
                    "[cyan]Filter (empty to clear)[/cyan]",
                    default="",
                    console=self.console,
                ).strip()
                page = 0
            elif action == "q":
                return None
            elif action.isdigit() and 1 <= int(action) <= len(visible):
                return visible[int(action) - 1]
            else:
                self.console.print(f"[red]✗ Invalid selection: {action}[/red]")

    def ask(self, message: str) -> str:
        return Prompt.ask(f"[cyan]{message}[/cyan]", console=self.console).strip()


class RofiSelector(Selector):
    """Menus shown through ``rofi -dmenu`` using themes from ``theme_dir``."""

    def __init__(self, theme_dir: Union[str, Path], executable: str = "rofi"):
        self.theme_dir = Path(theme_dir)
        self.executable = executable

    def _run(self, args: List[str], stdin: str = "") -> str:
        cmd = [self.executable, "-dmenu", *args]
        log.debug("Rofi command: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd, input=stdin, capture_output=True, text=True, check=False
            )
        except OSError as e:
            raise SelectionError(f"Failed to run rofi: {e}") from e
        # rofi exits with 1 when the menu is dismissed
        if result.returncode not in (0, 1):
            raise SelectionError(
                f"rofi exited with code {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout.strip()

    def select(
        self, options: List[SelectionOption], prompt: str = "Select"
    ) -> Optional[SelectionOption]:
        ordered = order_options(options)
        labels = [opt.label for opt in ordered] + [QUIT_LABEL]
        selected = self._run(
            ["-theme", str(self.theme_dir / "select.rasi"), "-i", "-p", prompt],
            stdin="\n".join(labels),
        )
        if not selected or selected == QUIT_LABEL:
            return None
        for opt in ordered:
            if opt.label == selected:
                return opt
        raise SelectionError("Selected option not found in original list")

    def ask(self, message: str) -> str:
        return self._run(
            [
                "-theme",
                str(self.theme_dir / "userInput.rasi"),
                "-p",
                "Input",
                "-mesg",
                message,
            ]
        )


def make_selector(config: ProgramConfig, console: Console) -> Selector:
    """Pick the selection UI the configuration asks for."""
    if config.rofi_selection:
        return RofiSelector(config.storage_dir)
    return ConsoleSelector(console)
