"""gitdeck CLI: sync, deck overview, review sessions and maintenance commands."""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer

from gitdeck.application.config import AppConfig, find_config_file, resolve_config
from gitdeck.application.factory import App, build_app
from gitdeck.domain.errors import ConflictError, GitdeckError, TransientNetworkError
from gitdeck.domain.models import Rating, StudyItem, parse_card_id

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="gitdeck: spaced-repetition flashcards stored in a git repository.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = typer.Typer(help="Manage gitdeck configuration.")
app.add_typer(config_app, name="config")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def humanize_error(e: Exception) -> str:
    """Turn a core error into one line for the terminal."""
    if isinstance(e, TransientNetworkError):
        return f"Network problem, try again later ({e})"
    if isinstance(e, ConflictError):
        return f"The remote changed underneath us: {e}"
    return str(e)


def _load_config(ctx: typer.Context, **overrides: Any) -> AppConfig:
    verbose = (ctx.obj or {}).get("verbose_bonus", 1)
    if verbose > 1:
        logging.getLogger().setLevel(logging.DEBUG)
    return resolve_config({**overrides, "verbose": verbose})


def _run(config: AppConfig, work: Callable[[App], Awaitable[T]]) -> T:
    """Build the app, run `work` on a fresh event loop, always close the app."""
    if not config.is_configured:
        typer.secho(
            "gitdeck is not configured. Set repo_url and token (or backend=local "
            "with local_root) in ~/.config/gitdeck/config.toml or GITDECK_* variables.",
            fg="red",
        )
        raise typer.Exit(2)

    async def main() -> T:
        gitdeck_app = build_app(config)
        try:
            return await work(gitdeck_app)
        finally:
            await gitdeck_app.aclose()

    try:
        return asyncio.run(main())
    except (GitdeckError, ValueError, KeyError) as e:
        typer.secho(f"Error: {humanize_error(e)}", fg="red")
        raise typer.Exit(1) from e


def format_interval(delta: timedelta) -> str:
    """Compact human interval: 10m, 3h, 4d, 2mo, 1.5y."""
    seconds = max(0, int(delta.total_seconds()))
    if seconds < 3600:
        return f"{max(1, seconds // 60)}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    days = seconds / 86400
    if days < 30:
        return f"{round(days)}d"
    if days < 365:
        return f"{round(days / 30)}mo"
    return f"{days / 365:.1f}y"


_RATING_INPUT = {
    "1": Rating.AGAIN,
    "2": Rating.HARD,
    "3": Rating.GOOD,
    "4": Rating.EASY,
    "again": Rating.AGAIN,
    "hard": Rating.HARD,
    "good": Rating.GOOD,
    "easy": Rating.EASY,
}


def parse_rating(answer: str) -> Rating | None:
    return _RATING_INPUT.get(answer.strip().lower())


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 1,
):
    """Global settings for gitdeck."""
    ctx.ensure_object(dict)
    ctx.obj["verbose_bonus"] = verbose


# ---------------------------------------------------------------------------
# Root commands
# ---------------------------------------------------------------------------


@app.command()
def sync(
    ctx: typer.Context,
    backend: Annotated[str | None, typer.Option(help="Remote backend: github, local.")] = None,
    local_root: Annotated[
        Path | None, typer.Option(help="Directory used as the remote by the local backend.")
    ] = None,
):
    """[bold green]Sync[/bold green] local reviews with the repository."""
    config = _load_config(ctx, backend=backend, local_root=local_root)

    async def work(gitdeck_app: App):
        return await gitdeck_app.coordinator.run_sync()

    result = _run(config, work)
    if result.status == "error":
        typer.secho(result.message, fg="red")
        raise typer.Exit(1)
    if result.status == "conflict":
        typer.secho(
            f"Remote had diverged. Your changes were pushed to branch '{result.branch}' "
            "and local cards were reset to the remote.",
            fg="yellow",
        )
    for deck_name, reason in result.failed_decks.items():
        typer.secho(f"Skipped deck '{deck_name}': {reason}", fg="yellow")
    typer.secho(f"Synced. {result.pulled} cards pulled.", fg="green")


@app.command()
def decks(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """List local decks with today's new and due counts."""
    config = _load_config(ctx)

    async def work(gitdeck_app: App):
        return gitdeck_app.service.deck_counts(gitdeck_app.clock.now())

    counts = _run(config, work)
    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        "deck": c.deck_name,
                        "new": c.new,
                        "due": c.due,
                        "total": c.total,
                        "suspended": c.suspended,
                    }
                    for c in counts
                ],
                indent=2,
            )
        )
        return

    if not counts:
        typer.secho("No decks yet. Run 'gitdeck sync' first.", fg="yellow")
        return
    width = max(len(c.deck_name) for c in counts)
    for c in counts:
        typer.echo(f"{c.deck_name:<{width}}  new {c.new:>3}  due {c.due:>3}  total {c.total:>4}")


def _show_card(item: StudyItem, due: int, new: int) -> None:
    typer.echo("")
    typer.secho(f"[{due} due, {new} new]", dim=True)
    label = " (reverse)" if item.is_reverse else ""
    typer.secho(f"{item.front}{label}", bold=True)


@app.command()
def review(
    ctx: typer.Context,
    deck: Annotated[str, typer.Argument(help="Deck to study.")],
):
    """Study a deck interactively.

    After the answer is shown, rate with 1 (Again), 2 (Hard), 3 (Good) or
    4 (Easy). 'u' undoes the last rating, 's' suspends the card and 'q' ends
    the session. Pending changes are pushed when the session ends.
    """
    config = _load_config(ctx)

    async def work(gitdeck_app: App) -> int:
        service = gitdeck_app.service
        clock = gitdeck_app.clock
        await gitdeck_app.coordinator.recover()

        reviewed = 0
        while True:
            queue = service.study_queue(deck, clock.now())
            item = queue.current
            if item is None:
                typer.secho("Nothing left to study in this deck today.", fg="green")
                return reviewed

            _show_card(item, len(queue.due_items), len(queue.new_items))
            action = typer.prompt(
                "Enter to show answer (u=undo, s=suspend, q=quit)",
                default="",
                show_default=False,
            ).strip().lower()
            if action == "q":
                return reviewed
            if action == "u":
                _undo_last(gitdeck_app, deck)
                continue
            if action == "s":
                service.suspend(item.card_id)
                typer.secho("Suspended.", fg="yellow")
                continue

            typer.echo(item.back)
            now = clock.now()
            preview = service.preview(item, now)
            labels = "  ".join(
                f"{int(r)} {r.name.title()} ({format_interval(preview[r].due - now)})"
                for r in Rating
            )
            while True:
                answer = typer.prompt(labels)
                if answer.strip().lower() == "q":
                    return reviewed
                rating = parse_rating(answer)
                if rating is not None:
                    break
                typer.secho("Please answer 1-4.", fg="yellow")

            service.rate(item, rating, clock.now())
            reviewed += 1
            # Let batched pushes started by the coordinator make progress.
            await asyncio.sleep(0)

    reviewed = _run(config, work)
    typer.echo(f"Reviewed {reviewed} card(s).")


def _undo_last(gitdeck_app: App, deck: str) -> None:
    entry = gitdeck_app.service.undo(deck)
    if entry is None:
        typer.secho("Nothing to undo.", fg="yellow")
        return
    _, term = parse_card_id(entry.card_id)
    typer.secho(f"Undid {entry.rating.name.title()} on '{term}'.", fg="green")


@app.command()
def undo(
    ctx: typer.Context,
    deck: Annotated[str, typer.Argument(help="Deck whose last rating to undo.")],
):
    """Undo the most recent rating in a deck."""
    config = _load_config(ctx)

    async def work(gitdeck_app: App):
        _undo_last(gitdeck_app, deck)

    _run(config, work)


@app.command()
def status(ctx: typer.Context):
    """Show sync status and pending local changes."""
    config = _load_config(ctx)

    async def work(gitdeck_app: App):
        coordinator = gitdeck_app.coordinator
        return {
            "status": coordinator.status(),
            "pending": coordinator.pending_count,
            "decks": len(gitdeck_app.service.card_store.deck_names()),
        }

    info = _run(config, work)
    color = "green" if info["status"] == "synced" else "yellow"
    typer.secho(f"Status: {info['status']}", fg=color)
    typer.echo(f"Pending cards: {info['pending']}")
    typer.echo(f"Local decks: {info['decks']}")


@app.command()
def history(
    ctx: typer.Context,
    limit: Annotated[int, typer.Option(help="Number of commits to show.")] = 10,
):
    """Show recent commits in the repository."""
    config = _load_config(ctx)

    async def work(gitdeck_app: App):
        return await gitdeck_app.repository_sync.recent_commits(limit)

    for commit in _run(config, work):
        typer.echo(f"{commit.id[:7]}  {commit.date}  {commit.message}")


@app.command()
def recover(ctx: typer.Context):
    """Replay unsynced reviews left behind by a crash and push them."""
    config = _load_config(ctx)

    async def work(gitdeck_app: App):
        return await gitdeck_app.coordinator.recover()

    result = _run(config, work)
    if result.status == "error":
        typer.secho(result.message, fg="red")
        raise typer.Exit(1)
    typer.echo(result.message or "Recovered.")


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show():
    """Display final resolved configuration."""
    config = resolve_config()
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    if d.get("token"):
        d["token"] = "***"
    typer.echo(json.dumps(d, indent=2))


@config_app.command("path")
def config_path():
    """Print the config file in use."""
    path = find_config_file()
    if path is None:
        typer.secho("No config file found.", fg="yellow")
        raise typer.Exit(1)
    typer.echo(str(path))
