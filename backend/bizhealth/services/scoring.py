"""Scoring collaborator interface.

WHAT:
    The five-pillar score formula lives outside this service. This module
    defines the result shape the pipeline relies on and loads the configured
    `compute_score(profile, business_type)` callable.

WHY:
    The orchestrator only needs the signature and determinism; keeping the
    formula behind a dotted-path setting lets the scoring engine ship
    independently.

REFERENCES:
    - Settings.SCORE_FUNCTION ("package.module:callable")
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from bizhealth.integrations.types import Pillar, ProfileMetrics

logger = logging.getLogger(__name__)


# Some engines call the operations pillar "ops"
_PILLAR_ALIASES = {"ops": Pillar.operations}


@dataclass
class PillarScore:
    score: int
    reasons: List[str] = field(default_factory=list)
    levers: List[str] = field(default_factory=list)


@dataclass
class ScoreResult:
    score: int
    pillars: Dict[Pillar, PillarScore]
    primary_risk: Optional[str] = None
    fastest_lever: Optional[str] = None
    recommended_next_steps: List[Any] = field(default_factory=list)
    missing_data: List[str] = field(default_factory=list)

    def pillar_scores(self) -> Dict[Pillar, int]:
        return {pillar: self.pillars[pillar].score for pillar in Pillar}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ScoreResult":
        """Build from a plain dict, accepting camelCase keys and the "ops" alias."""
        pillars: Dict[Pillar, PillarScore] = {}
        for name, value in (data.get("pillars") or {}).items():
            pillar = _PILLAR_ALIASES.get(name) or Pillar(name)
            if isinstance(value, PillarScore):
                pillars[pillar] = value
            else:
                pillars[pillar] = PillarScore(
                    score=int(value.get("score", 0)),
                    reasons=list(value.get("reasons") or []),
                    levers=list(value.get("levers") or []),
                )
        return cls(
            score=int(data["score"]),
            pillars=pillars,
            primary_risk=data.get("primary_risk", data.get("primaryRisk")),
            fastest_lever=data.get("fastest_lever", data.get("fastestLever")),
            recommended_next_steps=list(
                data.get("recommended_next_steps", data.get("recommendedNextSteps")) or []
            ),
            missing_data=list(data.get("missing_data", data.get("missingData")) or []),
        )


ScoreFunction = Callable[[ProfileMetrics, Optional[str]], Any]


def coerce_score_result(raw: Any) -> ScoreResult:
    """Normalise whatever the scorer returned and check all five pillars are present."""
    result = raw if isinstance(raw, ScoreResult) else ScoreResult.from_mapping(raw)
    missing = [p.value for p in Pillar if p not in result.pillars]
    if missing:
        raise ValueError(f"Score result is missing pillars: {', '.join(missing)}")
    if not 0 <= result.score <= 100:
        raise ValueError(f"Score out of range: {result.score}")
    return result


def load_score_function(path: Optional[str]) -> ScoreFunction:
    """Import `module:attr` (or `module.attr`) and return the callable."""
    if not path:
        raise RuntimeError("SCORE_FUNCTION is not set; point it at the scoring engine's compute_score callable.")

    if ":" in path:
        module_name, attr = path.split(":", 1)
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise RuntimeError(f"SCORE_FUNCTION must look like 'package.module:callable', got {path!r}")

    module = importlib.import_module(module_name)
    func = getattr(module, attr, None)
    if not callable(func):
        raise RuntimeError(f"SCORE_FUNCTION {path!r} is not callable")
    logger.info("[SCORING] Using score function %s", path)
    return func
