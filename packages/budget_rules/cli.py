# ruff: noqa: I001
"""CLI for the ``budget_rules`` package.

A Typer console interface over the rule engine. Environment variables
(``DATABASE_URL``, ``OPENAI_API_KEY``, ``BR_*`` tunables) are loaded from a
local ``.env`` with ``python-dotenv`` before any command runs. Business logic
lives in ``budget_rules.rules``, ``budget_rules.categorize`` and
``budget_rules.suggestions``; handlers here only parse options and print.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from db.models.budget import SYSTEM_SCOPE

from .errors import RulesEngineError
from .logging_setup import configure_logging
from .models import BulkWriteReport, ReapplyReport

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Maintain budgeting rules and keep transaction categories in sync. "
        "Loads DATABASE_URL and OPENAI_API_KEY from a local .env before running."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
OWNER_OPTION: OptionInfo = typer.Option(..., "--owner", help="Owner (user) id.")
CHUNK_SIZE_OPTION: OptionInfo = typer.Option(
    None, "--chunk-size", help="Writes per commit (defaults to BR_COMMIT_CHUNK_SIZE)."
)

T = TypeVar("T")


def _run(fn: Callable[[], T]) -> T:
    """Call ``fn`` and turn user-facing errors into exit code 1."""

    try:
        return fn()
    except (LookupError, ValueError, RulesEngineError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def _echo_write(label: str, report: BulkWriteReport) -> None:
    line = f"{label}: {report.applied}/{report.total} written"
    if not report.ok:
        line += f" (chunk {report.failed_chunk} failed, {report.not_updated} not updated)"
    typer.echo(line)


def _echo_reapplied(reports: tuple[ReapplyReport, ...]) -> bool:
    ok = True
    for r in reports:
        state = "reverted" if r.reverted else f"rule {r.winner_rule_id}"
        typer.echo(f"reapply owner={r.owner_id} key={r.normalized_text!r} -> {state}")
        _echo_write("  transactions", r.written)
        for tx_id, reason in r.unresolved:
            typer.echo(f"  unresolved {tx_id}: {reason}")
        ok = ok and r.written.ok
    return ok


def _category_arg(value: str | None, clear: bool = False) -> Any:
    from .rules import category_ref_from_text

    if clear:
        return None
    return category_ref_from_text(value)


@app.command("seed")
def seed_cmd(
    file: Annotated[Path, typer.Option("--file", exists=True, dir_okay=False, readable=True)],
    *,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Load default categories and SYSTEM rules from a JSON seed file."""

    from .rules import seed_system_defaults

    report = _run(lambda: seed_system_defaults(file, database_url=database_url))
    typer.echo(
        f"defaults={report.default_categories} rules_created={report.rules_created} "
        f"rules_updated={report.rules_updated}"
    )


@app.command("update-mappings")
def update_mappings_cmd(
    owner: str = OWNER_OPTION,
    *,
    rescan: bool = typer.Option(
        False, "--rescan", help="Also re-evaluate already categorized transactions."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Apply the current rules to the owner's transactions."""

    from .categorize import update_all_mappings

    report = _run(
        lambda: update_all_mappings(
            owner,
            mode="rescan" if rescan else "unmapped",
            database_url=database_url,
            chunk_size=chunk_size,
        )
    )
    typer.echo(f"scanned={report.scanned} matched={report.matched}")
    _echo_write("transactions", report.written)
    for tx_id, reason in report.unresolved:
        typer.echo(f"unresolved {tx_id}: {reason}")
    if not report.written.ok:
        raise typer.Exit(2)


@app.command("add-rule")
def add_rule_cmd(
    match: str = typer.Option(..., "--match", help="Text to look for in descriptions."),
    *,
    owner: str | None = typer.Option(None, "--owner", help="Owner id for a personal rule."),
    system: bool = typer.Option(False, "--system", help="Create a SYSTEM rule."),
    description: str | None = typer.Option(
        None, "--description", help="Clean display text (defaults to the match text)."
    ),
    category: str | None = typer.Option(
        None, "--category", help="Category name, or NEW:<name> for a pending default."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Create (or update in place) a rule and reapply it to history."""

    from .rules import create_rule

    if system == (owner is not None):
        typer.echo("Error: pass exactly one of --owner or --system.", err=True)
        raise typer.Exit(1)
    scope = SYSTEM_SCOPE if system else str(owner)
    change = _run(
        lambda: create_rule(
            scope,
            match,
            description,
            _category_arg(category),
            database_url=database_url,
            chunk_size=chunk_size,
        )
    )
    verb = "created" if change.created else "updated"
    typer.echo(f"rule {change.rule_id} {verb} scope={scope} key={change.normalized_text!r}")
    if not _echo_reapplied(change.reapplied):
        raise typer.Exit(2)


@app.command("edit-rule")
def edit_rule_cmd(
    rule_id: str = typer.Argument(..., help="Id of the rule to edit."),
    *,
    match: str | None = typer.Option(None, "--match"),
    description: str | None = typer.Option(None, "--description"),
    category: str | None = typer.Option(
        None, "--category", help="Category name, or NEW:<name> for a pending default."
    ),
    clear_category: bool = typer.Option(False, "--clear-category"),
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Edit a rule and reapply the old and new keys."""

    from .rules import update_rule

    kwargs: dict[str, Any] = {}
    if category is not None or clear_category:
        kwargs["category"] = _category_arg(category, clear=clear_category)
    change = _run(
        lambda: update_rule(
            rule_id,
            match_text=match,
            mapped_description=description,
            database_url=database_url,
            chunk_size=chunk_size,
            **kwargs,
        )
    )
    typer.echo(f"rule {change.rule_id} updated key={change.normalized_text!r}")
    if not _echo_reapplied(change.reapplied):
        raise typer.Exit(2)


@app.command("delete-rule")
def delete_rule_cmd(
    rule_id: str = typer.Argument(..., help="Id of the rule to delete."),
    *,
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Delete a rule; affected transactions fall back or revert."""

    from .rules import delete_rule

    change = _run(
        lambda: delete_rule(rule_id, database_url=database_url, chunk_size=chunk_size)
    )
    typer.echo(f"rule {rule_id} deleted key={change.normalized_text!r}")
    if not _echo_reapplied(change.reapplied):
        raise typer.Exit(2)


@app.command("reapply")
def reapply_cmd(
    owner: str = OWNER_OPTION,
    *,
    match: str = typer.Option(..., "--match", help="Rule text whose key is reapplied."),
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Re-run the retroactive reapplication for one key (safe to repeat)."""

    from .reapply import reapply_rule_change

    report = _run(
        lambda: reapply_rule_change(
            owner, match, database_url=database_url, chunk_size=chunk_size
        )
    )
    if not _echo_reapplied((report,)):
        raise typer.Exit(2)


@app.command("suggest")
def suggest_cmd(
    owner: str = OWNER_OPTION,
    *,
    batch_size: int | None = typer.Option(
        None, "--batch-size", help="Transactions per classifier call (BR_SUGGEST_CHUNK_SIZE)."
    ),
    model: str | None = typer.Option(None, "--model", help="Classifier model override."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Ask the classifier for merchant/category suggestions on unmapped transactions."""

    import os

    from .suggestions import request_suggestions

    if not os.getenv("OPENAI_API_KEY"):
        typer.echo("Error: OPENAI_API_KEY is not set in the environment.", err=True)
        raise typer.Exit(1)
    report = _run(
        lambda: request_suggestions(
            owner, database_url=database_url, chunk_size=batch_size, model=model
        )
    )
    typer.echo(
        f"requested={report.requested} chunks={report.chunks} "
        f"failed_chunks={report.chunks_failed} suggested={report.suggested}"
    )


@app.command("review")
def review_cmd(
    owner: str = OWNER_OPTION,
    *,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print pending suggestions grouped by category, then proposed rules."""

    from .suggestions import build_suggestion_batches, propose_rules_for_owner

    batches = build_suggestion_batches(owner, database_url=database_url)
    if not batches:
        typer.echo("No pending suggestions.")
        return
    for batch in batches:
        typer.echo(f"{batch.category_name} ({len(batch.items)})")
        for item in batch.items:
            typer.echo(
                f"  {item.transaction_id}  {item.raw_description}  ->  "
                f"{item.suggested_merchant or '-'}  [{item.amount}]"
            )
    typer.echo("Proposed rules:")
    for p in propose_rules_for_owner(owner, database_url=database_url):
        typer.echo(
            f"  {p.match_text!r} -> {p.category_name}  "
            f"({len(p.affected_ids)} unmapped transactions)"
        )


@app.command("approve")
def approve_cmd(
    owner: str = OWNER_OPTION,
    *,
    select: list[str] = typer.Option(
        [], "--select", help="Transaction id to accept (repeatable)."
    ),
    rule: list[str] = typer.Option(
        [], "--rule", help="Transaction id whose merchant becomes a rule (repeatable)."
    ),
    accept_all: bool = typer.Option(False, "--all", help="Accept every pending suggestion."),
    database_url: str | None = DATABASE_URL_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
) -> None:
    """Accept selected suggestions, reject the rest, and save flagged rules."""

    from .suggestions import build_suggestion_batches, bulk_approve

    selected = list(select)
    if accept_all:
        selected = [
            item.transaction_id
            for batch in build_suggestion_batches(owner, database_url=database_url)
            for item in batch.items
        ]
    report = _run(
        lambda: bulk_approve(
            owner, selected, rule, database_url=database_url, chunk_size=chunk_size
        )
    )
    typer.echo(
        f"approved={report.approved} rejected={report.rejected} rules={report.rules_saved}"
    )
    _echo_write("transactions", report.written)
    for tx_id, reason in report.unresolved:
        typer.echo(f"unresolved {tx_id}: {reason}")
    reapplied_ok = _echo_reapplied(report.reapplied)
    if not report.written.ok or not reapplied_ok:
        raise typer.Exit(2)


@app.callback()
def _root() -> None:
    """Load ``.env`` from the working directory and configure logging."""

    # override=False keeps already-set environment variables
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    app()
