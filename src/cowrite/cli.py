"""CLI entry point for cowrite."""

import asyncio
import json
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from cowrite import __version__
from cowrite.anchors import annotate_content, offset_to_position
from cowrite.config import Settings, load_settings
from cowrite.delivery import CommentDelivery
from cowrite.logger import get_logger, init_logger
from cowrite.mcp_server import CommentTools, create_server, serve_stdio
from cowrite.models import Comment
from cowrite.proposals import StaleProposal, apply_proposal, reject_proposal
from cowrite.store import (
    CommentNotFound,
    CommentStore,
    InvalidTarget,
    InvalidTransition,
)
from cowrite.storage import normalize_path
from cowrite.watcher import SourceFileWatcher


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _open_store(ctx: click.Context) -> CommentStore:
    store = CommentStore.from_settings(_settings(ctx))
    store.load()
    return store


def _resolve(ctx: click.Context, file: Path) -> Path:
    try:
        return normalize_path(file, _settings(ctx).project_dir)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


def _relative(ctx: click.Context, file: str) -> str:
    try:
        return Path(file).relative_to(_settings(ctx).project_dir).as_posix()
    except ValueError:
        return file


def _describe(ctx: click.Context, comment: Comment) -> str:
    """One-line summary: id, status, location and comment text."""
    location = _relative(ctx, comment.file)
    if comment.is_whole_file:
        location += " (whole file)"
    else:
        try:
            content = Path(comment.file).read_text(encoding="utf-8")
            pos = offset_to_position(content, comment.offset)
            location += f":{pos.line + 1}:{pos.column + 1}"
        except (OSError, UnicodeDecodeError):
            location += f" @{comment.offset}"
    return f"[{comment.id}] {comment.status.value:<8} {location}  {comment.comment}"


@click.group()
@click.version_option(version=__version__, prog_name="cowrite")
@click.option(
    "--project-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory holding .cowrite-comments.json (default: current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug output on stderr")
@click.pass_context
def cli(ctx: click.Context, project_dir: Path | None, verbose: bool):
    """Live commenting for agent sessions."""
    init_logger(verbose=verbose)
    try:
        settings = load_settings(project_dir)
    except ValidationError as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(2)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option(
    "-w",
    "--watch",
    "watch_files",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Source file to watch for edits (repeatable)",
)
@click.option("--timeout", type=float, default=None, help="Default wait_for_comment timeout in seconds")
@click.pass_context
def serve(ctx: click.Context, watch_files: tuple[Path, ...], timeout: float | None):
    """
    Run the MCP server on stdio.

    Keeps the comment store in sync with .cowrite-comments.json and, for
    every watched file, re-anchors comments when the file is edited.

    Examples:

        cowrite serve

        cowrite serve --watch docs/guide.md
    """
    settings = _settings(ctx)
    # Long-running: timestamp every line
    logger = init_logger(verbose=get_logger().verbose, timestamps=True)
    store = CommentStore.from_settings(settings)
    store.load()
    store.start_watching()

    sources = SourceFileWatcher(store)
    files = {_resolve(ctx, f) for f in watch_files}
    files.update(Path(c.file) for c in store.get_all() if Path(c.file).is_file())
    for file in sorted(files):
        try:
            sources.watch(file)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Not watching {file}: {e}")
    sources.start()

    async def run() -> None:
        shutdown = asyncio.Event()
        delivery = CommentDelivery(store, default_timeout=timeout or settings.wait_timeout)
        tools = CommentTools(store, delivery, settings.project_dir, cancel=shutdown)
        try:
            await serve_stdio(create_server(tools), tools.notifier)
        finally:
            shutdown.set()

    logger.info("Cowrite MCP server running on stdio")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Shutting down...")
        sources.stop()
        store.close()


@cli.command(name="list")
@click.option(
    "--status",
    type=click.Choice(["pending", "answered", "resolved", "all"], case_sensitive=False),
    default="all",
    help="Filter by status",
)
@click.option("--file", "file", type=click.Path(path_type=Path), default=None, help="Only comments on this file")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def list_comments(ctx: click.Context, status: str, file: Path | None, json_output: bool):
    """
    List comments sorted by position.

    Examples:

        cowrite list --status pending

        cowrite list --file README.md --json
    """
    store = _open_store(ctx)
    target = str(_resolve(ctx, file)) if file is not None else None
    comments = store.get_all(file=target, status=status.lower())

    if json_output:
        click.echo(json.dumps([c.to_json_dict() for c in comments], indent=2, ensure_ascii=False))
        return

    if not comments:
        click.echo("No comments found.")
        return

    for comment in comments:
        click.echo(_describe(ctx, comment))
        for reply in comment.replies:
            marker = " (proposal)" if reply.proposal else ""
            click.echo(f"    {reply.from_.value}{marker}: {reply.text}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--offset", type=int, default=None, help="Start of the commented span (characters)")
@click.option("--length", type=int, default=None, help="Length of the commented span")
@click.argument("body", required=True)
@click.pass_context
def add(ctx: click.Context, file: Path, offset: int | None, length: int | None, body: str):
    """
    Add a comment to FILE.

    Without --offset/--length the comment applies to the whole file.

    Examples:

        cowrite add README.md "Needs an intro"

        cowrite add README.md --offset 120 --length 14 "Reword this"
    """
    path = _resolve(ctx, file)
    selected = ""
    if offset is not None or length is not None:
        offset = offset or 0
        length = length or 0
        content = path.read_text(encoding="utf-8")
        if offset < 0 or length <= 0 or offset + length > len(content):
            click.echo(
                f"Error: span [{offset}, {offset + length}) is outside {file} ({len(content)} characters)",
                err=True,
            )
            sys.exit(2)
        selected = content[offset : offset + length]

    store = _open_store(ctx)
    try:
        comment = store.add(str(path), offset or 0, length or 0, selected, body)
    finally:
        store.close()
    click.echo(f"Added comment {comment.id}")


@cli.command()
@click.argument("comment_id", required=True)
@click.option(
    "--from",
    "author",
    type=click.Choice(["user", "agent"], case_sensitive=False),
    default="user",
    help="Who is replying",
)
@click.argument("body", required=True)
@click.pass_context
def reply(ctx: click.Context, comment_id: str, author: str, body: str):
    """
    Reply to a comment.

    Examples:

        cowrite reply 01HQABCDEFGHIJKLMNOPQRSTUV "Not quite, try again"
    """
    store = _open_store(ctx)
    try:
        new_reply = store.add_reply(comment_id, author.lower(), body)
        status = store.get(comment_id).status.value
    except CommentNotFound as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(f"Added reply {new_reply.id} to comment {comment_id} (now {status})")


@cli.command()
@click.argument("comment_id", required=True)
@click.pass_context
def resolve(ctx: click.Context, comment_id: str):
    """Mark a comment as resolved."""
    store = _open_store(ctx)
    try:
        store.resolve(comment_id)
    except CommentNotFound as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(f"Comment {comment_id} resolved")


@cli.command()
@click.argument("comment_id", required=True)
@click.pass_context
def reopen(ctx: click.Context, comment_id: str):
    """Reopen a resolved comment."""
    store = _open_store(ctx)
    try:
        store.reopen(comment_id)
    except CommentNotFound as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except InvalidTransition as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    finally:
        store.close()
    click.echo(f"Comment {comment_id} reopened")


@cli.command()
@click.argument("comment_id", required=True)
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def delete(ctx: click.Context, comment_id: str, force: bool):
    """Delete a comment permanently."""
    store = _open_store(ctx)
    try:
        if store.get(comment_id) is None:
            click.echo(f"Error: Comment not found: {comment_id}", err=True)
            sys.exit(1)
        if not force:
            click.confirm(f"Delete comment {comment_id}? This cannot be undone.", abort=True)
        store.delete(comment_id)
    except click.Abort:
        click.echo("Delete cancelled")
        return
    finally:
        store.close()
    click.echo(f"Comment {comment_id} deleted")


@cli.command(name="apply-proposal")
@click.argument("comment_id", required=True)
@click.argument("reply_id", required=True)
@click.pass_context
def apply_proposal_cmd(ctx: click.Context, comment_id: str, reply_id: str):
    """Write a proposed change into its file."""
    store = _open_store(ctx)
    try:
        apply_proposal(store, comment_id, reply_id)
    except CommentNotFound as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except (InvalidTarget, InvalidTransition, StaleProposal, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    finally:
        store.close()
    click.echo(f"Proposal {reply_id} applied")


@cli.command(name="reject-proposal")
@click.argument("comment_id", required=True)
@click.argument("reply_id", required=True)
@click.pass_context
def reject_proposal_cmd(ctx: click.Context, comment_id: str, reply_id: str):
    """Reject a proposed change."""
    store = _open_store(ctx)
    try:
        reject_proposal(store, comment_id, reply_id)
    except CommentNotFound as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except InvalidTransition as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    finally:
        store.close()
    click.echo(f"Proposal {reply_id} rejected")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def annotate(ctx: click.Context, file: Path):
    """Print FILE with inline [COMMENT #id: "..."] markers."""
    path = _resolve(ctx, file)
    store = _open_store(ctx)
    try:
        content = path.read_text(encoding="utf-8")
        comments = store.get_for_file(str(path))
    except (OSError, UnicodeDecodeError) as e:
        click.echo(f"Error reading file: {e}", err=True)
        sys.exit(2)
    finally:
        store.close()
    click.echo(annotate_content(content, comments), nl=False)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
