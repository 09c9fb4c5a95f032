"""
Step definitions for the job pipeline.

A step table is declared per job kind in ``config.yaml`` and validated at
startup (see :func:`docai_backend.configuration.validate_step_tables`). For
process jobs the caller's features pick which steps run and in what order;
the ``finalize`` step always runs last. Question generation always runs its
whole table.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from omegaconf import DictConfig

from .models import JobKind

FINALIZE = "finalize"


@dataclass(frozen=True)
class Step:
    name: str
    feature: str
    progress_delta: int
    duration: float


def load_step_table(settings: DictConfig, kind: JobKind) -> List[Step]:
    scale = float(settings.pipeline.time_scale)
    return [
        Step(
            name=str(entry.name),
            feature=str(entry.feature),
            progress_delta=int(entry.progress),
            duration=float(entry.duration) * scale,
        )
        for entry in settings.pipeline.steps[kind.value]
    ]


def dedupe_features(features: Iterable[str]) -> List[str]:
    """Drop repeated features, keeping the first occurrence's position."""
    seen = set()
    ordered = []
    for feature in features:
        if feature not in seen:
            seen.add(feature)
            ordered.append(feature)
    return ordered


def build_steps(settings: DictConfig, kind: JobKind, features: Optional[Iterable[str]] = None) -> List[Step]:
    """
    Resolve the ordered step list for a job.

    Args:
        settings: Runtime configuration holding the step tables
        kind: Job kind
        features: Requested features (process jobs only), in caller order

    Returns:
        Steps in execution order

    Raises:
        ValueError: If a requested feature has no step in the table
    """
    table = load_step_table(settings, kind)
    if kind != JobKind.PROCESS:
        return table

    by_feature = {step.feature: step for step in table}
    steps = []
    for feature in dedupe_features(features or settings.pipeline.default_features):
        if feature == FINALIZE:
            continue
        if feature not in by_feature:
            raise ValueError(f"Unknown processing feature '{feature}'")
        steps.append(by_feature[feature])

    if FINALIZE in by_feature:
        steps.append(by_feature[FINALIZE])
    return steps
