#!/usr/bin/env python3

from typing import Callable, Optional

import click

import gitpr.errors
import gitpr.land
import gitpr.poll
import gitpr.shell
import gitpr.status
from gitpr.config import Config, LandConfig
from gitpr.status import LandingPlan, PRInfo

MAX_TITLE = 80

CHECK_ICONS = {
    "pass": "✅",
    "success": "✅",
    "fail": "❌",
    "failure": "❌",
    "cancel": "❌",
    "skipping": "◻️",
    "neutral": "◻️",
    "pending": "⏳",
}

MERGE_STATE_TEXT = {
    "CLEAN": "🟢 Ready to merge",
    "MERGEABLE": "🟢 Ready to merge",
    "HAS_HOOKS": "🟢 Ready to merge",
    "CONFLICTING": "⚠️ Has conflicts - must be resolved",
    "DIRTY": "⚠️ Has conflicts - must be resolved",
    "BLOCKED": "🔒 Blocked by branch protection",
    "BEHIND": "↓ Behind base branch",
    "UNSTABLE": "⏳ Checks pending or failing",
    "UNKNOWN": "❓ Status unknown - computing...",
    "DRAFT": "📝 Draft PR - not ready to merge",
}

MERGE_STATE_ICONS = {
    "CONFLICTING": "⚠️",
    "DIRTY": "⚠️",
    "BLOCKED": "🔒",
    "BEHIND": "⬇️",
    "UNSTABLE": "⏳",
    "UNKNOWN": "❓",
    "DRAFT": "📝",
    "HAS_HOOKS": "🟢",
    "MERGEABLE": "🟢",
    "CLEAN": "🟢",
}

CHECKS_TEXT = {
    gitpr.status.FAILING: "❌ Checks failing",
    gitpr.status.PENDING: "⏳ Checks pending",
    gitpr.status.PASSING: "✅ All checks passed",
}


def status_icon(pr: PRInfo) -> str:
    if pr.state == "MERGED":
        return "✅"
    if pr.state == "CLOSED":
        return "❌"
    if pr.mergeable == "CONFLICTING":
        return "⚠️"
    if pr.mergeable == "MERGEABLE":
        return "🟡" if pr.merge_status == "UNSTABLE" else "🟢"
    return MERGE_STATE_ICONS.get(pr.merge_status, "◻️")


def status_text(pr: PRInfo) -> str:
    if pr.state == "MERGED":
        return "✅ Already merged"
    if pr.state == "CLOSED":
        return "❌ Closed (not merged)"
    if pr.mergeable == "CONFLICTING":
        return MERGE_STATE_TEXT["CONFLICTING"]
    if pr.mergeable == "MERGEABLE" and pr.merge_status == "UNSTABLE":
        return "🟡 Mergeable but checks unstable (non-required checks failing)"
    return MERGE_STATE_TEXT.get(pr.merge_status, pr.merge_status)


def truncate_title(title: str, max_len: int = MAX_TITLE) -> str:
    if len(title) <= max_len:
        return title
    return title[: max_len - 3] + "..."


def render(plan: LandingPlan, error: Optional[Exception] = None) -> str:
    lines = [
        "================== Stack Landing Status ==================",
        "Stack: {} PRs".format(len(plan)),
        "",
    ]
    for i, pr in enumerate(plan):
        lines.append(
            "{:2d}. PR #{:<4d} {} {}".format(
                i + 1, pr.number, status_icon(pr), truncate_title(pr.title)
            )
        )
        lines.append("    {}".format(pr.url))
        text = status_text(pr)
        if text:
            lines.append("    {}".format(text))
        if pr.review_status:
            lines.append("    {}".format(pr.review_status))
        if pr.checks:
            lines.append("    Checks:")
            for check in pr.checks:
                lines.append(
                    "      {} {}".format(CHECK_ICONS.get(check.bucket, "⏳"), check.name)
                )
        elif pr.checks_status in CHECKS_TEXT:
            lines.append("    {}".format(CHECKS_TEXT[pr.checks_status]))
        lines.append("")

    lines.append("-----------------------------------------------------------")
    merged = sum(1 for pr in plan if pr.state == "MERGED")
    ready = sum(1 for pr in plan if pr.state == "OPEN" and pr.mergeable == "MERGEABLE")
    blocked = sum(1 for pr in plan if pr.state == "OPEN" and pr.mergeable != "MERGEABLE")
    if merged:
        lines.append(
            "Status: {} merged, {} ready, {} blocked".format(merged, ready, blocked)
        )
    else:
        lines.append("Status: {} ready to merge, {} blocked".format(ready, blocked))
    if error is not None:
        lines.append("⚠ Error updating status: {}".format(error))
    return "\n".join(lines)


def all_merged(plan: LandingPlan) -> bool:
    return all(pr.state == "MERGED" for pr in plan)


def read_stdin_line() -> str:
    return click.prompt(
        "\nAction ([y]es to land, [r]efresh, [q]uit)",
        default="",
        show_default=False,
        prompt_suffix=": ",
    )


class Dashboard(object):
    """
    Shows the live status of a landing plan and lands it when told to.
    Everything happens on the calling thread; the only blocking point
    that is not bounded by a timeout is waiting for the operator.
    """

    lander: gitpr.land.Lander
    plan: LandingPlan
    error: Optional[Exception]

    def __init__(
        self,
        *,
        lander: gitpr.land.Lander,
        plan: LandingPlan,
        read_line: Optional[Callable[[], str]] = None,
        clear: bool = True,
    ):
        self.lander = lander
        self.plan = plan
        self.read_line = read_line if read_line is not None else read_stdin_line
        self.clear = clear
        self.error = None

    def refresh(self) -> None:
        self.error = gitpr.status.update_all_status(
            self.lander.sh, self.lander.config.repo, self.plan
        )

    def show(self, notice: str = "") -> None:
        if self.clear:
            click.clear()
        click.echo(render(self.plan, self.error))
        if notice:
            click.echo(notice)

    def run(self) -> int:
        """
        Returns: the number of PRs landed by us

        Raises:
            CancelledError: the operator quit
        """
        click.echo("⠼ Fetching PR status...")
        self.refresh()
        notice = ""
        while True:
            if all_merged(self.plan):
                self.show()
                click.echo("\n✓ All {} PRs are merged".format(len(self.plan)))
                return 0
            self.show(notice)
            notice = ""
            action = self.read_line().strip().lower()
            if action in ("y", "yes", "land"):
                click.echo("\n🚀 Starting landing process...")
                return self.lander.land(self.plan)
            elif action in ("r", "refresh"):
                click.echo("⠼ Refreshing status...")
                self.refresh()
            elif action in ("q", "quit"):
                raise gitpr.errors.CancelledError("⚠️ Landing cancelled")
            else:
                notice = "Unknown action. Use [y]es, [r]efresh, or [q]uit"


def main(
    *,
    sh: gitpr.shell.Shell,
    config: Config,
    land_config: LandConfig,
    clock: Optional[gitpr.poll.Clock] = None,
    confirm: Callable[[str], bool] = gitpr.land.default_confirm,
    submit: Optional[Callable[[], None]] = None,
    read_line: Optional[Callable[[], str]] = None,
) -> int:
    lander = gitpr.land.Lander(
        sh=sh,
        config=config,
        land_config=land_config,
        clock=clock,
        confirm=confirm,
        submit=submit,
    )
    plan = gitpr.land.plan_landing(lander)
    if plan is None:
        return 0
    return Dashboard(lander=lander, plan=plan, read_line=read_line).run()
