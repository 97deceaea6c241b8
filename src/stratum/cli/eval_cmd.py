"""``stratum eval`` commands: build and generate datasets, run evaluations, gate results."""

from __future__ import annotations

import json
import sys
from dataclasses import replace
from pathlib import Path

import click
from rich.table import Table

from stratum.cli.main import console, get_config, run_async
from stratum.config import GateThresholds
from stratum.context.llm import AnthropicChatModel
from stratum.context.topic import TopicThresholds, create_topic_scorer
from stratum.eval.builder import PLATFORMS, BuildOptions, build_dataset
from stratum.eval.dataset import load_dataset, write_dataset
from stratum.eval.gate import evaluate_gate, load_summary, resolve_summary_path
from stratum.eval.generators import (
    DEFAULT_HISTORY_ROUNDS,
    DEFAULT_LONG_CONTEXT_COUNT,
    difficulty_counts,
    generate_long_context_cases,
    generate_topic_cases,
    load_pair_set,
    load_templates,
)
from stratum.eval.report import write_run_artifacts
from stratum.eval.runner import run_evaluation
from stratum.eval.savings import SAVINGS_DEFAULTS, measure_token_savings
from stratum.eval.topic_eval import MAX_MISMATCHES, evaluate_topic_cases
from stratum.eval.types import CaseResult


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value * 100:.2f}%"


@click.group("eval")
def eval_group() -> None:
    """Offline evaluation of layered context against a full-history baseline."""


@eval_group.command("build-dataset")
@click.option(
    "--source",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Directory holding <platform>-data/messages.json exports",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("datasets/context-eval.v1.jsonl"),
    show_default=True,
)
@click.option("--target-cases", type=int, default=100, show_default=True)
@click.option("--max-cases-per-conversation", type=int, default=None, help="Default: max(8, 25% of target)")
@click.option("--strict-cap", is_flag=True, help="Never exceed the per-conversation cap")
@click.option("--variants-per-query", type=int, default=3, show_default=True)
@click.option("--min-history", type=int, default=18, show_default=True)
@click.option("--min-window", type=int, default=22, show_default=True)
@click.option("--max-window", type=int, default=48, show_default=True)
@click.option("--min-query-chars", type=int, default=5, show_default=True)
@click.option("--seed", type=int, default=None, help="Default: eval.seed from config")
@click.option("--redact/--no-redact", default=True, show_default=True)
@click.option("--platforms", default=",".join(PLATFORMS), show_default=True)
@click.pass_context
def build_dataset_cmd(
    ctx: click.Context,
    source: Path,
    output: Path,
    target_cases: int,
    max_cases_per_conversation: int | None,
    strict_cap: bool,
    variants_per_query: int,
    min_history: int,
    min_window: int,
    max_window: int,
    min_query_chars: int,
    seed: int | None,
    redact: bool,
    platforms: str,
) -> None:
    """Sample labelled cases from exported chat history."""
    config = get_config(ctx)
    options = BuildOptions(
        target_cases=target_cases,
        max_cases_per_conversation=max_cases_per_conversation,
        strict_conversation_cap=strict_cap,
        variants_per_query=variants_per_query,
        min_history_messages=min_history,
        min_window_messages=min_window,
        max_window_messages=max_window,
        min_query_chars=min_query_chars,
        seed=config.eval.seed if seed is None else seed,
        redact=redact,
        platforms=tuple(platforms.split(",")),
    )
    result = build_dataset(source, options, output_path=output)
    meta = result.meta

    console.print(
        f"[green]✓[/green] {meta['selectedCount']} cases from {meta['candidateCount']} candidates "
        f"across {meta['conversationCount']} conversations"
    )
    console.print(f"  Layer mix: {meta['selectedLayerCounts']}")
    console.print(f"  Platform mix: {meta['selectedPlatformCounts']}")
    for warning in meta["diversityWarnings"]:
        console.print(f"  [yellow]⚠ {warning}[/yellow]")
    console.print(f"  Dataset: {result.dataset_path}")
    console.print(f"  Metadata: {result.meta_path}")


@eval_group.command("run")
@click.option(
    "--dataset",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--output-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--run-id", default=None, help="Default: UTC timestamp YYYYMMDD-HHMMSS")
@click.option("--max-cases", type=click.IntRange(min=1), default=None)
@click.option("--seed", type=int, default=None)
@click.option("--storage-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--llm-summaries", is_flag=True, help="Summarize archives with an Anthropic model")
@click.option("--summary-model", default=None, help="Model for --llm-summaries (default: summarizer.model)")
@click.option("--dense/--no-dense", default=None, help="Blend dense embedding scores at L0")
@click.option("--max-prompt-tokens", type=int, default=None)
@click.option("--max-recent-messages", type=int, default=None)
@click.option("--archive-chunk-size", type=int, default=None)
@click.option("--max-archives", type=int, default=None)
@click.option("--l0-target-tokens", type=int, default=None)
@click.option("--l1-target-tokens", type=int, default=None)
@click.option("--score-threshold-high", type=float, default=None)
@click.option("--top1-top2-margin", type=float, default=None)
@click.option("--max-items-for-l1", type=int, default=None)
@click.option("--max-items-for-l2", type=int, default=None)
@click.pass_context
def run_cmd(
    ctx: click.Context,
    dataset: Path,
    output_dir: Path | None,
    run_id: str | None,
    max_cases: int | None,
    seed: int | None,
    storage_dir: Path | None,
    llm_summaries: bool,
    summary_model: str | None,
    dense: bool | None,
    **layered_overrides: int | float | None,
) -> None:
    """Compare layered context against the trimmed full-history baseline."""
    config = get_config(ctx)
    overrides = {k: v for k, v in layered_overrides.items() if v is not None}
    eval_config = replace(
        config.eval,
        output_dir=str(output_dir) if output_dir else config.eval.output_dir,
        storage_dir=str(storage_dir) if storage_dir else config.eval.storage_dir,
        seed=config.eval.seed if seed is None else seed,
    )
    config = replace(
        config,
        layered=replace(config.layered, **overrides).clamped(),
        dense=config.dense if dense is None else replace(config.dense, enabled=dense),
        eval=eval_config,
    )
    model = None
    if llm_summaries:
        model = AnthropicChatModel(model=summary_model or config.summarizer.model)

    cases = load_dataset(dataset)

    def progress(index: int, total: int, result: CaseResult) -> None:
        delta = "n/a" if result.recall_delta is None else f"{result.recall_delta * 100:.2f}%"
        console.print(
            f"[dim]{index}/{total}[/dim] {result.case_id}: "
            f"token={result.savings_ratio * 100:.2f}% evidenceDelta={delta}"
        )

    summary, results = run_async(run_evaluation(
        cases,
        config,
        dataset_path=str(dataset),
        run_id=run_id,
        max_cases=max_cases,
        model=model,
        progress=progress,
    ))
    artifacts = write_run_artifacts(summary, results)

    applied = summary.applied_tokens
    delta = summary.recall_delta
    console.print(f"\n[green]✓[/green] Completed run {summary.run_id}")
    console.print(f"  Summary JSON: {artifacts.summary_json}")
    console.print(f"  Summary Markdown: {artifacts.summary_markdown}")
    console.print(f"  Cases CSV: {artifacts.cases_csv}")
    console.print(f"  Regressions: {artifacts.regressions}")
    console.print(
        f"  Layered application: applied={summary.applied_case_count}/{summary.case_count} "
        f"({_pct(summary.apply_rate)}), appliedSavings={_pct(applied.savings_ratio.mean if applied else None)}"
    )
    console.print(
        f"  Gate metrics: savings={_pct(summary.prompt_tokens.savings_ratio.mean)}, "
        f"evidenceDelta={_pct(delta.mean if delta else None)}, "
        f"infoLoss={_pct(summary.information_loss_rate)}"
    )


@eval_group.command("gate")
@click.option("--summary", "summary_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--output-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--run-id", default=None)
@click.option("--min-token-savings", type=float, default=None)
@click.option("--max-evidence-recall-drop", type=float, default=None)
@click.option("--max-information-loss-rate", type=float, default=None)
@click.option("--min-layer-adequacy-rate", type=float, default=None)
@click.pass_context
def gate_cmd(
    ctx: click.Context,
    summary_path: Path | None,
    output_dir: Path | None,
    run_id: str | None,
    **threshold_overrides: float | None,
) -> None:
    """Fail (exit 1) when a run misses any quality or savings threshold."""
    config = get_config(ctx)
    thresholds: GateThresholds = replace(
        config.eval.gate, **{k: v for k, v in threshold_overrides.items() if v is not None}
    )
    path = resolve_summary_path(summary_path, output_dir or config.eval.output_dir, run_id)
    report = evaluate_gate(load_summary(path), thresholds, summary_path=path)

    table = Table(title=f"Gate: {path}")
    table.add_column("Criterion")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Result")
    for criterion in report.criteria:
        table.add_row(
            criterion.name,
            _pct(criterion.value),
            f"{criterion.comparator} {_pct(criterion.threshold)}",
            "[green]PASS[/green]" if criterion.passed else "[red]FAIL[/red]",
        )
    console.print(table)
    console.print(
        f"Layered apply rate: {_pct(report.apply_rate)} "
        f"({report.applied_case_count}/{report.case_count}), "
        f"applied-only savings: {_pct(report.applied_savings_mean)}"
    )

    if not report.passed:
        console.print("[red]✗ Gate FAILED[/red]")
        sys.exit(1)
    console.print("[green]✓ Gate PASSED[/green]")


@eval_group.command("topic")
@click.option(
    "--dataset",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--scorer", type=click.Choice(["sparse", "llm", "classifier"]), default=None)
@click.option("--model", default=None, help="Anthropic model for llm/classifier scorers")
@click.option("--max-tokens", type=click.IntRange(min=1), default=None)
@click.option("--min-accuracy", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--max-mismatches", type=click.IntRange(min=1), default=MAX_MISMATCHES, show_default=True)
@click.option("--json", "json_output", is_flag=True, help="Print the summary as JSON")
@click.pass_context
def topic_cmd(
    ctx: click.Context,
    dataset: Path,
    scorer: str | None,
    model: str | None,
    max_tokens: int | None,
    min_accuracy: float | None,
    max_mismatches: int,
    json_output: bool,
) -> None:
    """Replay labelled topic transitions and report decision accuracy."""
    topic = get_config(ctx).topic
    kind = scorer or topic.scorer
    chat_model = None if kind == "sparse" else AnthropicChatModel(model=model or topic.model)
    relevance = create_topic_scorer(kind, chat_model, max_tokens or topic.max_tokens)
    thresholds = TopicThresholds(topic.enter_threshold, topic.exit_threshold, topic.temp_stay_threshold)

    cases = load_dataset(dataset)
    summary = run_async(evaluate_topic_cases(
        cases,
        relevance,
        thresholds=thresholds,
        max_mismatches=max_mismatches,
        reference_messages=topic.reference_messages,
    ))

    if json_output:
        console.print_json(json.dumps(summary.to_dict()))
    else:
        table = Table(title=f"Topic transitions ({kind})")
        table.add_column("Transition")
        table.add_column("Expected", justify="right")
        table.add_column("Recall", justify="right")
        for decision, count in summary.to_dict()["expectedCounts"].items():
            table.add_row(decision, str(count), _pct(summary.to_dict()["perTransitionRecall"][decision]))
        console.print(table)
        console.print(
            f"Evaluated {summary.evaluated} of {summary.dataset_cases} cases "
            f"({summary.skipped} skipped), accuracy {summary.accuracy:.4f}"
        )
        for mismatch in summary.mismatches:
            console.print(
                f"  [yellow]{mismatch.case_id}[/yellow] {mismatch.state_before.value}: "
                f"expected {mismatch.expected.value}, got {mismatch.predicted.value} "
                f"(relMain={mismatch.rel_main:.3f}, relTemp={mismatch.rel_temp:.3f})"
            )

    if min_accuracy is not None and summary.accuracy < min_accuracy:
        console.print(f"[red]✗ accuracy {summary.accuracy:.4f} is below {min_accuracy:.4f}[/red]")
        sys.exit(1)


@eval_group.command("generate-topic")
@click.option(
    "--pairs",
    default="fuzzy",
    show_default=True,
    help="Built-in pair set (fuzzy, mixed) or a YAML file of domain pairs",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Default: datasets/topic-<name>.v1.jsonl",
)
def generate_topic_cmd(pairs: str, output: Path | None) -> None:
    """Generate labelled topic transition cases from domain pairs."""
    pair_set = load_pair_set(pairs)
    cases = generate_topic_cases(pair_set)
    path = write_dataset(output or Path(f"datasets/topic-{pair_set.name}.v1.jsonl"), cases)

    console.print(
        f"[green]✓[/green] {len(cases)} topic cases from {len(pair_set.pairs)} pairs ({pair_set.name})"
    )
    for difficulty, count in sorted(difficulty_counts(pair_set).items()):
        console.print(f"  {difficulty}: {count} pairs")
    console.print(f"  Dataset: {path}")


@eval_group.command("generate-long-context")
@click.option(
    "--template",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Template dataset (default: built-in templates)",
)
@click.option("--count", type=click.IntRange(min=1), default=DEFAULT_LONG_CONTEXT_COUNT, show_default=True)
@click.option("--history-rounds", type=click.IntRange(min=0), default=DEFAULT_HISTORY_ROUNDS, show_default=True)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("datasets/long-context.v1.jsonl"),
    show_default=True,
)
def generate_long_context_cmd(template: Path | None, count: int, history_rounds: int, output: Path) -> None:
    """Pad template cases with filler history for token savings runs."""
    templates = load_templates(template)
    cases = generate_long_context_cases(templates, count=count, history_rounds=history_rounds)
    path = write_dataset(output, cases)

    console.print(f"[green]✓[/green] {len(cases)} long-context cases from {len(templates)} templates")
    console.print(f"  Messages per case: {cases[0].metadata['messageCount']}")
    console.print(f"  Dataset: {path}")


@eval_group.command("savings")
@click.option(
    "--dataset",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--limit", type=click.IntRange(min=1), default=None)
@click.option("--max-recent-messages", type=int, default=SAVINGS_DEFAULTS["max_recent_messages"], show_default=True)
@click.option("--archive-chunk-size", type=int, default=SAVINGS_DEFAULTS["archive_chunk_size"], show_default=True)
@click.option("--max-archives", type=int, default=SAVINGS_DEFAULTS["max_archives"], show_default=True)
@click.option("--max-prompt-tokens", type=int, default=SAVINGS_DEFAULTS["max_prompt_tokens"], show_default=True)
@click.option("--json", "json_output", is_flag=True, help="Print the report as JSON")
@click.pass_context
def savings_cmd(
    ctx: click.Context,
    dataset: Path,
    limit: int | None,
    json_output: bool,
    **layered_overrides: int,
) -> None:
    """Measure prompt and retrieval token savings of layered context."""
    config = get_config(ctx)
    config = replace(config, layered=replace(config.layered, **layered_overrides).clamped())

    report = run_async(measure_token_savings(load_dataset(dataset), config, limit=limit))
    data = report.to_dict()
    if json_output:
        console.print_json(json.dumps(data))
        return

    table = Table(title="Layered token savings")
    table.add_column("Scope")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Saved", justify="right")
    table.add_row(
        "Prompt", str(data["prompt"]["before"]), str(data["prompt"]["after"]),
        _pct(report.prompt_savings_ratio),
    )
    table.add_row(
        "Retrieval", str(data["retrieval"]["baselineL2"]), str(data["retrieval"]["actual"]),
        _pct(report.retrieval_savings_ratio),
    )
    console.print(table)
    console.print(
        f"Applied to {data['appliedCount']} of {data['caseCount']} cases "
        f"({data['skippedCount']} skipped), layers {data['layerCounts']}"
    )
