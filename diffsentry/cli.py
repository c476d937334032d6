"""CLI entrypoint for DiffSentry."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from diffsentry.config import Config, ConfigurationError, load_config
from diffsentry.schemas import ChangeEntry, FileReview

app = typer.Typer(
    name="diffsentry",
    help="AI review of merge/pull request diffs, posted back as inline comments.",
    add_completion=False,
)
console = Console()

DIFF_GIT_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def _load(config_file: Optional[str], model: Optional[str]) -> Config:
    try:
        return load_config(config_path=config_file, overrides={"llm.model": model})
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _build_orchestrator(cfg: Config, override_fetcher=None):  # type: ignore[no-untyped-def]
    from diffsentry.orchestrator import ReviewOrchestrator
    from diffsentry.review_client import ReviewClient

    try:
        client = ReviewClient.from_config(cfg)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    return ReviewOrchestrator(client, cfg, override_fetcher=override_fetcher)


def _print_results(file_reviews: list[FileReview]) -> None:
    if not file_reviews:
        console.print("[green]No comments: nothing worth changing was found.[/green]")
        return
    table = Table(title=f"Review Comments ({sum(len(r.results) for r in file_reviews)})")
    table.add_column("File", style="cyan")
    table.add_column("Line", justify="right")
    table.add_column("Severity", justify="center")
    table.add_column("Comment")

    from diffsentry.publisher import classify_severity

    for review in sorted(file_reviews, key=lambda r: r.file_path):
        for result in review.results:
            table.add_row(
                review.file_path,
                str(result.line_number),
                classify_severity(result.text).value,
                result.text,
            )
    console.print(table)


# ---------------------------------------------------------------------------
# review
# ---------------------------------------------------------------------------

@app.command()
def review(
    platform: str = typer.Option("gitlab", "--platform", help="gitlab or github"),
    project: str = typer.Option(..., "--project", help="GitLab project id/path or GitHub owner/name"),
    request: int = typer.Option(..., "--request", help="Merge request iid or pull request number"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print comments instead of posting them"),
    model: Optional[str] = typer.Option(None, "--model", help="Model key (see `models`)"),
    config_file: str = typer.Option(None, "--config", help="Path to config YAML"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Review a merge/pull request and post the comments back."""
    _setup_logging(verbose)
    cfg = _load(config_file, model)

    from diffsentry.providers import ProviderUnavailableError
    from diffsentry.publisher import ReviewPublisher, is_skip_requested

    try:
        host = _make_host(platform, cfg)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    host_errors = _host_errors()

    try:
        with console.status(f"Fetching {platform} request {project}#{request}..."):
            mr = host.get_merge_request(project, request)
            if is_skip_requested(mr.get("title"), cfg.review.skip_review_marker):
                console.print(
                    f"[yellow]Title contains '{cfg.review.skip_review_marker}'; skipping review.[/yellow]"
                )
                return
            change_set = host.fetch_change_set(project, request, mr)
            existing = host.fetch_existing_comments(project, request)
    except host_errors as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not change_set:
        console.print("[yellow]No changed files to review.[/yellow]")
        return

    override_path = cfg.review.prompt_override_path

    def fetch_rules(ref: str) -> Optional[str]:
        return host.fetch_project_prompt_override(project, ref, override_path)

    orchestrator = _build_orchestrator(cfg, override_fetcher=fetch_rules if override_path else None)
    console.print(f"[cyan]Reviewing {len(change_set)} changed file(s) with {orchestrator.client.model}...[/cyan]")
    try:
        file_reviews = orchestrator.review(change_set, existing)
    except ProviderUnavailableError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    _print_results(file_reviews)
    if dry_run:
        console.print("[yellow]Dry run: nothing posted.[/yellow]")
        return

    publisher = ReviewPublisher(host, marker=cfg.review.comment_marker)
    report = publisher.publish(
        project,
        request,
        file_reviews,
        existing,
        summary_model=orchestrator.client.model if cfg.review.post_summary else None,
        platform=platform,
    )
    console.print(
        f"[green]Posted {report.posted} comment(s)[/green]"
        f" ({report.skipped} skipped, {report.failed} failed)"
    )


# ---------------------------------------------------------------------------
# review-diff
# ---------------------------------------------------------------------------

@app.command("review-diff")
def review_diff(
    path: str = typer.Argument(..., help="Path to a unified diff/patch file"),
    file_path: Optional[str] = typer.Option(
        None, "--file-path", help="File name to use when the diff has no git headers"
    ),
    model: Optional[str] = typer.Option(None, "--model", help="Model key (see `models`)"),
    config_file: str = typer.Option(None, "--config", help="Path to config YAML"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Review a local diff file and print the comments."""
    _setup_logging(verbose)
    diff_path = Path(path)
    if not diff_path.exists():
        console.print(f"[red]Diff file not found: {path}[/red]")
        raise typer.Exit(1)

    cfg = _load(config_file, model)
    change_set = split_unified_diff(diff_path.read_text(encoding="utf-8"), file_path or diff_path.stem)
    if not change_set:
        console.print("[yellow]No changed files found in the diff.[/yellow]")
        raise typer.Exit(1)

    from diffsentry.providers import ProviderUnavailableError

    orchestrator = _build_orchestrator(cfg)
    try:
        with console.status(f"Reviewing {len(change_set)} file(s)..."):
            file_reviews = orchestrator.review(change_set)
    except ProviderUnavailableError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    _print_results(file_reviews)


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

@app.command()
def models() -> None:
    """List supported model keys."""
    from diffsentry.providers import MODEL_VARIANTS

    table = Table(title="Supported Models")
    table.add_column("Model", style="cyan")
    table.add_column("Provider", style="green")
    for name, variant in MODEL_VARIANTS.items():
        table.add_row(name, variant)
    console.print(table)
    console.print("Any other claude-* model id is passed to the Anthropic API as-is.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_host(platform: str, cfg: Config):  # type: ignore[no-untyped-def]
    platform = platform.lower()
    marker = cfg.review.comment_marker
    if platform == "gitlab":
        from diffsentry.gitlab_client import GitLabClient

        return GitLabClient(cfg.gitlab_url, cfg.gitlab_token.get_secret_value(), marker=marker)
    if platform == "github":
        from diffsentry.github_client import GitHubClient

        return GitHubClient(cfg.github_token.get_secret_value(), marker=marker)
    raise ConfigurationError(f"Unknown platform {platform!r}; expected gitlab or github")


def _host_errors() -> tuple[type[Exception], ...]:
    import requests

    from diffsentry.github_client import GitHubClientError
    from diffsentry.gitlab_client import GitLabClientError

    return (GitLabClientError, GitHubClientError, requests.RequestException)


def split_unified_diff(diff_text: str, default_path: str = "unknown") -> list[ChangeEntry]:
    """Split a (possibly multi-file) unified diff into change entries.

    Text without ``diff --git`` headers is treated as a single file named
    ``default_path``. Deleted files are dropped.
    """
    entries: list[ChangeEntry] = []
    chunks: list[tuple[str, str, list[str]]] = []

    for line in diff_text.split("\n"):
        match = DIFF_GIT_RE.match(line)
        if match:
            chunks.append((match.group(1), match.group(2), []))
            continue
        if not chunks:
            chunks.append((default_path, default_path, []))
        chunks[-1][2].append(line)

    for old_path, new_path, body in chunks:
        if any(ln.startswith("deleted file mode") or ln.startswith("+++ /dev/null") for ln in body):
            continue
        if not any(ln.startswith("@@") for ln in body):
            continue
        new_file = any(ln.startswith("new file mode") or ln.startswith("--- /dev/null") for ln in body)
        entries.append(ChangeEntry(
            new_path=new_path,
            old_path=None if new_file else old_path,
            diff_text="\n".join(body),
            new_file=new_file,
        ))
    return entries


if __name__ == "__main__":
    app()
