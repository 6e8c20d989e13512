import contextlib
import sys
from typing import Any, Dict, Generator, Tuple

import click

import gitpr
import gitpr.config
import gitpr.dashboard
import gitpr.errors
import gitpr.github_real
import gitpr.land
import gitpr.logs
import gitpr.shell
import gitpr.submit

EXIT_STACK = contextlib.ExitStack()

GitPrContext = Tuple[
    gitpr.shell.Shell,
    gitpr.config.Config,
    gitpr.github_real.RealGitHubEndpoint,
]


@contextlib.contextmanager
def cli_context(opts: Dict[str, Any]) -> Generator[GitPrContext, None, None]:
    with EXIT_STACK:
        try:
            shell = gitpr.shell.Shell()
            config = gitpr.config.read_config(
                sh=shell,
                remote_name=opts["remote"],
                trunk=opts["trunk"],
                gh_hosts=opts["gh_hosts"],
                include_other_authors=opts["include_other_authors"],
                default_tags=opts["tags"],
            )
            gitpr.logs.formatter.redact(config.github_oauth, "<GITHUB_TOKEN>")
            github = gitpr.github_real.RealGitHubEndpoint(
                oauth_token=config.github_oauth,
                proxy=config.proxy,
                github_url=config.github_url,
            )
            yield shell, config, github
        except gitpr.errors.GitPrError as e:
            click.echo("❌ {}".format(e), err=True)
            sys.exit(1)


@click.group(invoke_without_command=True)
@click.pass_context
@click.version_option(gitpr.__version__, "--version", "-V")
@click.option("--debug", is_flag=True, help="Log debug information to stderr")
@click.option("--remote", default="origin", show_default=True, help="Remote to push to")
@click.option("--main", "trunk", default="main", show_default=True, help="Trunk branch")
@click.option(
    "--include-other-authors",
    is_flag=True,
    help="Submit commits by other authors too",
)
@click.option(
    "--gh-hosts",
    default=gitpr.config.DEFAULT_GH_HOSTS,
    show_default=True,
    help="Hosts file of the GitHub CLI",
)
@click.option(
    "--tag",
    "tags",
    multiple=True,
    help="Label to add to every PR; may be repeated",
)
# passed along to submit if no other command given
@click.option("--dry-run", is_flag=True, hidden=True)
def main(
    ctx: click.Context,
    debug: bool,
    remote: str,
    trunk: str,
    include_other_authors: bool,
    gh_hosts: str,
    tags: Tuple[str, ...],
    dry_run: bool,
) -> None:
    """
    Submit and land stacks of pull requests on GitHub
    """
    EXIT_STACK.enter_context(gitpr.logs.manager(debug=debug))
    # Commands that fail before reaching cli_context still release logging
    ctx.call_on_close(EXIT_STACK.close)
    ctx.obj = {
        "remote": remote,
        "trunk": trunk,
        "include_other_authors": include_other_authors,
        "gh_hosts": gh_hosts,
        "tags": tags,
    }

    if not ctx.invoked_subcommand:
        ctx.invoke(submit, dry_run=dry_run)


@main.command("submit")
@click.pass_obj
@click.option("--dry-run", is_flag=True, help="Print what would change and stop")
def submit(obj: Dict[str, Any], dry_run: bool) -> None:
    """
    Push every commit of the stack and create or update its PR
    """
    with cli_context(obj) as (shell, config, github):
        gitpr.submit.main(sh=shell, github=github, config=config, dry_run=dry_run)


@main.command("land")
@click.pass_obj
@click.option(
    "--timeout",
    type=float,
    default=600.0,
    show_default=True,
    help="Seconds to wait for checks and for queued merges",
)
@click.option(
    "--poll-interval",
    type=float,
    default=10.0,
    show_default=True,
    help="Seconds between status polls",
)
@click.option(
    "--delete-branch/--no-delete-branch",
    default=True,
    show_default=True,
    help="Delete each branch once its PR is merged",
)
@click.option(
    "--require-checks/--no-require-checks",
    default=True,
    show_default=True,
    help="Wait for checks to pass before merging",
)
@click.option("--auto", "auto_mode", is_flag=True, help="Merge with gh pr merge --auto")
@click.option("--dry-run", is_flag=True, help="Print what would happen and stop")
@click.option(
    "--interactive", "-i", is_flag=True, help="Show a status dashboard before landing"
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in gitpr.config.MergeStrategy]),
    default=gitpr.config.MergeStrategy.REQUIRED_ONLY.value,
    show_default=True,
    help="Which checks to wait for; manual asks before every merge",
)
@click.option(
    "--check",
    "checks",
    multiple=True,
    help="Check to wait for with --strategy=custom; may be repeated",
)
@click.option("--auto-retry", is_flag=True, help="Rerun failed workflow runs once")
@click.option(
    "--pause-on-fail",
    is_flag=True,
    help="Ask whether to keep waiting when a check fails",
)
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Answer yes to prompts")
def land(
    obj: Dict[str, Any],
    timeout: float,
    poll_interval: float,
    delete_branch: bool,
    require_checks: bool,
    auto_mode: bool,
    dry_run: bool,
    interactive: bool,
    strategy: str,
    checks: Tuple[str, ...],
    auto_retry: bool,
    pause_on_fail: bool,
    assume_yes: bool,
) -> None:
    """
    Merge the PRs of the stack, bottom first
    """
    merge_strategy = gitpr.config.MergeStrategy(strategy)
    if checks and merge_strategy is not gitpr.config.MergeStrategy.CUSTOM:
        raise click.UsageError("--check only applies to --strategy=custom")
    if merge_strategy is gitpr.config.MergeStrategy.CUSTOM and not checks:
        raise click.UsageError("--strategy=custom needs at least one --check")
    land_config = gitpr.config.LandConfig(
        timeout=timeout,
        poll_interval=poll_interval,
        delete_branch=delete_branch,
        require_checks=require_checks,
        auto_mode=auto_mode,
        dry_run=dry_run,
        interactive=interactive,
        merge_strategy=merge_strategy,
        custom_checks=frozenset(checks),
        auto_retry=auto_retry,
        pause_on_fail=pause_on_fail,
        assume_yes=assume_yes,
    )
    with cli_context(obj) as (shell, config, github):
        submit_cb = gitpr.submit.submit_callback(
            sh=shell, github=github, config=config, dry_run=dry_run
        )
        runner: Any = gitpr.dashboard.main if interactive else gitpr.land.main
        runner(
            sh=shell,
            config=config,
            land_config=land_config,
            submit=submit_cb,
        )

