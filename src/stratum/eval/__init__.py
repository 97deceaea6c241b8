"""Offline evaluation harness for the layered context engine."""

from stratum.eval.builder import BuildOptions, build_dataset
from stratum.eval.dataset import load_dataset, write_dataset
from stratum.eval.gate import GateReport, evaluate_gate, load_summary, resolve_summary_path
from stratum.eval.generators import (
    generate_long_context_cases,
    generate_topic_cases,
    load_pair_set,
    load_templates,
)
from stratum.eval.report import write_run_artifacts
from stratum.eval.runner import EvalRunner, run_evaluation, summarize_results
from stratum.eval.savings import SavingsReport, measure_token_savings
from stratum.eval.topic_eval import evaluate_topic_cases
from stratum.eval.types import CaseResult, EvalCase, EvalLabels, RunSummary

__all__ = [
    "BuildOptions",
    "CaseResult",
    "EvalCase",
    "EvalLabels",
    "EvalRunner",
    "GateReport",
    "RunSummary",
    "SavingsReport",
    "build_dataset",
    "evaluate_gate",
    "evaluate_topic_cases",
    "generate_long_context_cases",
    "generate_topic_cases",
    "load_dataset",
    "load_pair_set",
    "load_summary",
    "load_templates",
    "measure_token_savings",
    "resolve_summary_path",
    "run_evaluation",
    "summarize_results",
    "write_dataset",
    "write_run_artifacts",
]
