from __future__ import annotations

import pytest

from lintbot.infra.context import new_event_context
from lintbot.lint.models import Diagnostic
from lintbot.lint.models import group_diagnostics
from lintbot.review.hunks import filter_relevant
from lintbot.review.models import FileChange
from lintbot.review.provider import ProviderComment
from lintbot.review.reconcile import COMMENT_FOOTER
from lintbot.review.reconcile import MAX_CHECK_RUN_ANNOTATIONS
from lintbot.review.reconcile import build_check_run_report
from lintbot.review.reconcile import format_comment_body
from lintbot.review.reconcile import plan_reconciliation
from lintbot.review.reconcile import report_check_run
from lintbot.review.reconcile import report_comments
from tests.fakes import FakeProvider


def test_format_comment_body() -> None:
    assert format_comment_body("mylinter", "unused variable") == f"[mylinter] unused variable\n{COMMENT_FOOTER}"


def test_plan_keeps_comment_whose_body_contains_message() -> None:
    existing = [ProviderComment(id="1", path="a.go", line=3, body="[golint] [unused x](https://x/issues/1)\n...")]
    plan = plan_reconciliation(group_diagnostics([Diagnostic(file="a.go", line=3, message="unused x")]), existing)
    assert plan.is_noop
    assert [c.id for c in plan.kept] == ["1"]


def test_plan_deletes_comment_for_fixed_line() -> None:
    existing = [
        ProviderComment(id="1", path="a.go", line=3, body="[golint] unused x"),
        ProviderComment(id="2", path="a.go", line=9, body="[golint] shadowed y"),
    ]
    plan = plan_reconciliation(group_diagnostics([Diagnostic(file="a.go", line=3, message="unused x")]), existing)
    assert plan.to_add == []
    assert [c.id for c in plan.to_delete] == ["2"]


@pytest.mark.anyio
async def test_end_to_end_single_create() -> None:
    ctx = new_event_context("e2e")
    provider = FakeProvider(changes=[FileChange(path="main.go", diff="@@ -132,7 +132,7 @@\n-a\n+b")])
    diagnostics = group_diagnostics([Diagnostic(file="main.go", line=135, column=2, message="unused variable")])

    relevant = filter_relevant(diagnostics, provider.hunk_set)
    await report_comments(ctx, "mylinter", relevant, provider)

    assert len(provider.created) == 1
    assert provider.created[0].path == "main.go"
    assert provider.created[0].line == 135
    assert provider.created[0].body == f"[mylinter] unused variable\n{COMMENT_FOOTER}"
    assert provider.deleted == []


@pytest.mark.anyio
async def test_second_run_is_idempotent() -> None:
    ctx = new_event_context("idem")
    provider = FakeProvider()
    diagnostics = group_diagnostics(
        [Diagnostic(file="a.go", line=1, message="first"), Diagnostic(file="b.go", line=2, message="second")]
    )
    await report_comments(ctx, "golint", diagnostics, provider)
    assert len(provider.created) == 2

    provider.reset_calls()
    plan = await report_comments(ctx, "golint", diagnostics, provider)
    assert plan.is_noop
    assert provider.created == []
    assert provider.deleted == []


@pytest.mark.anyio
async def test_fix_removes_stale_comment_and_regression_adds_one() -> None:
    ctx = new_event_context("fix")
    provider = FakeProvider()
    await report_comments(
        ctx,
        "golint",
        group_diagnostics([Diagnostic(file="a.go", line=1, message="first"), Diagnostic(file="a.go", line=5, message="fixed later")]),
        provider,
    )
    stale_id = next(c.id for c in provider.comments.values() if "fixed later" in c.body)

    provider.reset_calls()
    await report_comments(
        ctx,
        "golint",
        group_diagnostics([Diagnostic(file="a.go", line=1, message="first"), Diagnostic(file="a.go", line=8, message="new")]),
        provider,
    )
    assert provider.deleted == [stale_id]
    assert [(c.path, c.line) for c in provider.created] == [("a.go", 8)]


@pytest.mark.anyio
async def test_other_linters_comments_are_untouched() -> None:
    ctx = new_event_context("isolation")
    provider = FakeProvider()
    provider.add_existing("a.go", 1, "[staticcheck] something")
    provider.add_existing("a.go", 1, "a human comment")

    await report_comments(ctx, "golint", {}, provider)
    assert provider.deleted == []
    assert len(provider.comments) == 2


@pytest.mark.anyio
async def test_list_comments_is_retried() -> None:
    ctx = new_event_context("retry")
    provider = FakeProvider()
    provider.list_failures = 2

    await report_comments(
        ctx, "golint", group_diagnostics([Diagnostic(file="a.go", line=1, message="m")]), provider, initial_delay=0.001
    )
    assert len(provider.created) == 1


def test_check_run_report_is_capped() -> None:
    ctx = new_event_context("check")
    diagnostics = group_diagnostics(
        [Diagnostic(file="a.go", line=i, message=f"issue {i}") for i in range(1, MAX_CHECK_RUN_ANNOTATIONS + 20)]
    )
    report = build_check_run_report(ctx, "golint", "abc", diagnostics, log_url="http://lintbot/view/k")
    assert len(report.annotations) == MAX_CHECK_RUN_ANNOTATIONS
    assert report.conclusion == "failure"
    assert report.summary.startswith("[full log](http://lintbot/view/k)")


@pytest.mark.anyio
async def test_check_run_success_without_annotations() -> None:
    ctx = new_event_context("check")
    provider = FakeProvider()
    report = await report_check_run(ctx, "golint", {}, provider)
    assert report.conclusion == "success"
    assert provider.check_runs == [report]
    assert report.head_sha == "abc123"
